"""Shared response envelopes and enum helpers for the JSON API."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Self

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.json import DataClassJSONMixin


@dataclass
class BaseResponse(DataClassJSONMixin):
    """Envelope of every response body.

    Failed requests set `success` to false and carry an error code such as
    `E404` or `E_MOVE_CYCLE` plus a human readable message.
    """

    success: bool = True

    error_code: str | None = field(
        metadata=field_options(alias="errorCode"), default=None
    )

    error_msg: str | None = field(
        metadata=field_options(alias="errorMsg"), default=None
    )

    class Config(BaseConfig):
        serialize_by_alias = True
        omit_none = True


@dataclass
class PageResponse(BaseResponse):
    """Paging fields shared by list responses. Pages are numbered from 1."""

    total: int = 0
    pages: int = 0
    page_no: int = field(metadata=field_options(alias="pageNo"), default=1)
    page_size: int = field(metadata=field_options(alias="pageSize"), default=50)


def create_error_response(
    error_msg: str, error_code: str | None = None
) -> BaseResponse:
    return BaseResponse(success=False, error_code=error_code, error_msg=error_msg)


class BaseEnum(Enum):
    """Enum whose members can be looked up by their wire value."""

    @classmethod
    def from_value(cls, value: str) -> Self:
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Invalid {cls.__name__} value: {value}")
