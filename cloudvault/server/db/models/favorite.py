from typing import Optional

from sqlalchemy import BigInteger, Index, String, UniqueConstraint, true
from sqlalchemy.orm import Mapped, mapped_column

from cloudvault.server.db.base import Base
from cloudvault.server.utils.snowflake import next_id

from .file import now_ms


class FavoriteFolderDO(Base):
    """A named collection of favorite files."""

    __tablename__ = "f_favorite_folder"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=next_id)
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    is_default: Mapped[bool] = mapped_column(default=False, nullable=False)
    """Used when no folder is chosen. At most one per owner."""

    create_time: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    update_time: Mapped[int] = mapped_column(
        BigInteger, default=now_ms, onupdate=now_ms
    )

    def __repr__(self) -> str:
        return f"<FavoriteFolderDO(id={self.id}, name='{self.name}', is_default={self.is_default})>"


Index(
    "uq_favorite_folder_default",
    FavoriteFolderDO.owner_id,
    unique=True,
    sqlite_where=FavoriteFolderDO.is_default == true(),
    postgresql_where=FavoriteFolderDO.is_default == true(),
)


class FavoriteDO(Base):
    """Membership of a file in a favorite folder."""

    __tablename__ = "f_favorite"
    __table_args__ = (
        UniqueConstraint("folder_id", "file_id", name="uq_favorite_folder_file"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=next_id)
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)

    file_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)
    """Not a foreign key: rows referencing deleted files are filtered on read."""

    folder_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)
    create_time: Mapped[int] = mapped_column(BigInteger, default=now_ms)
