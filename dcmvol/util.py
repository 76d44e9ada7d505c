"""Various utility functions"""
from __future__ import annotations
import os, logging
from enum import Enum
from typing import Any, Dict, Generic, Type, TypeVar, Union

from cattrs.preconf.json import make_converter as make_json_converter
from typing_extensions import Protocol


log = logging.getLogger(__name__)


class DicomDataError(Exception):
    """Base class for exceptions from erroneous dicom data"""


class DuplicateDataError(DicomDataError):
    """A duplicate dataset was found"""


PathInputType = Union[str, "os.PathLike"]


SourceType = Union[PathInputType, bytes, bytearray, memoryview]
"""Anything we can parse: a path to a file or the raw bytes of one"""


def source_name(src: SourceType) -> str:
    """Get a short, human readable name for a parse input"""
    if isinstance(src, (bytes, bytearray, memoryview)):
        return "<%d bytes in memory>" % len(src)
    return os.fspath(src)


json_serializer = make_json_converter()
"""JSON (de)serializer

Handles most classes automatically, otherwise classes should inherit
`CustomJsonSerializable` and provide the required method, which can in turn use
this on sub objects.
"""


class CustomJsonSerializable(Protocol):
    """Base class for objects that need custom JSON serialization"""

    def to_json_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


json_serializer.register_unstructure_hook(
    CustomJsonSerializable, lambda i: i.to_json_dict()
)


TC_Type = TypeVar("TC_Type", bound="TomlConfigurable[Any]")


class TomlConfigurable(Generic[TC_Type], Protocol):
    """Protocol for objects that are configurable through TOML"""

    @classmethod
    def from_toml_dict(cls, toml_dict: Dict[str, Any]) -> TC_Type:
        return cls(**toml_dict)  # type: ignore


def _flexible_enum_struct(data: Any, cls: Type[Enum]) -> Enum:
    """Match the value first, then fall back to a case insensitive name"""
    for e in cls:
        if data == e.value:
            return e
    if isinstance(data, str):
        for e in cls:
            if data.upper() == e.name:
                return e
    raise ValueError(f"Unable to convert '{data}' to {cls.__name__}")


def enum_from_str(cls: Type[Enum], val: Union[str, Enum]) -> Enum:
    """Convert a (case insensitive) name, or value, into an Enum member"""
    if isinstance(val, cls):
        return val
    return _flexible_enum_struct(val, cls)
