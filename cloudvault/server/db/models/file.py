import time
from typing import Optional

from sqlalchemy import (
    BigInteger,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cloudvault.server.db.base import Base
from cloudvault.server.utils.snowflake import next_id


def now_ms() -> int:
    return int(time.time() * 1000)


class UserFileDO(Base):
    """A file or folder in a user's tree.

    Folders and files share one table; `parent_id` is null at the root.
    """

    __tablename__ = "f_user_file"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=next_id)
    """Immutable entity id."""

    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    """Owner user id. All tree queries are scoped to one owner."""

    parent_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, index=True, nullable=True
    )
    """Containing folder, or None for the root."""

    name: Mapped[str] = mapped_column(String, nullable=False)
    """Display name."""

    name_key: Mapped[str] = mapped_column(String, nullable=False)
    """Case folded name used for sibling uniqueness."""

    is_folder: Mapped[bool] = mapped_column(default=False, nullable=False)

    path: Mapped[str] = mapped_column(String, nullable=False, default="/")
    """Slash joined names of the ancestors. Rewritten with every parent change."""

    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    category: Mapped[str] = mapped_column(String, nullable=False, default="other")
    """Value of `FileCategory`."""

    extension: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    blob_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    """Key of the content in blob storage. Files only."""

    md5: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(default=False, nullable=False)
    delete_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    create_time: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    update_time: Mapped[int] = mapped_column(
        BigInteger, default=now_ms, onupdate=now_ms
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    """Optimistic concurrency counter."""

    tags: Mapped[list["FileTagDO"]] = relationship(
        back_populates="file",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FileTagDO.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def tag_names(self) -> list[str]:
        return [t.name for t in self.tags]

    def __repr__(self) -> str:
        return f"<UserFileDO(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"


# Live siblings must have distinct case folded names. Root entities have a
# null parent, which would never collide in a plain unique index.
Index(
    "uq_user_file_live_sibling_name",
    UserFileDO.owner_id,
    func.coalesce(UserFileDO.parent_id, 0),
    UserFileDO.name_key,
    unique=True,
    sqlite_where=UserFileDO.is_deleted == false(),
    postgresql_where=UserFileDO.is_deleted == false(),
)


class FileTagDO(Base):
    """A free text label attached to a file or folder."""

    __tablename__ = "f_file_tag"
    __table_args__ = (UniqueConstraint("file_id", "name", name="uq_file_tag_name"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=next_id)
    file_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("f_user_file.id", ondelete="CASCADE"), index=True
    )
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, index=True, nullable=False)

    file: Mapped[UserFileDO] = relationship(back_populates="tags")
