'''Convert decoded DICOM data sets into plain tag name -> value mappings

Values end up as str/int/float (or lists of them), a `PixelRange` for the
pixel data, or lists of further mappings for sequences. The byte level
decoding itself is left to pydicom.
'''
from __future__ import annotations
import logging
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional, Union

import pydicom
from attrs import frozen, field
from pydicom.dataset import Dataset
from pydicom.multival import MultiValue
from pydicom.tag import BaseTag, Tag

from .tags import lookup_tag, tag_key
from .util import DicomDataError


log = logging.getLogger(__name__)


UNDEFINED_LENGTH = 0xFFFFFFFF


PIXEL_DATA_TAG = Tag("PixelData")


class UnsupportedElementError(DicomDataError):
    '''The decoded data can't be converted into a metadata mapping'''


BufferType = Union[bytes, bytearray, memoryview]


@frozen
class PixelRange:
    '''Reference to the pixel data inside the buffer a file was decoded from'''

    buffer: BufferType = field(repr=False, eq=False)

    offset: int

    length: int

    little_endian: bool = True

    def __attrs_post_init__(self) -> None:
        if self.offset < 0 or self.offset + self.length > len(self.buffer):
            raise DicomDataError(
                "Pixel data range (%d, %d) is outside of the %d byte buffer"
                % (self.offset, self.length, len(self.buffer))
            )

    def view(self) -> memoryview:
        '''Get a zero-copy view of just the pixel bytes'''
        return memoryview(self.buffer)[self.offset : self.offset + self.length]


def decode_dataset(data: BufferType) -> Dataset:
    '''Decode the raw bytes of a DICOM file'''
    return pydicom.dcmread(BytesIO(data), force=True)


numeric_vrs = frozenset(('US', 'SS', 'UL', 'SL', 'FL', 'FD', 'US or SS',
                         'UV', 'SV'))


binary_vrs = frozenset(('OB', 'OW', 'OF', 'OD', 'OL', 'OV', 'UN',
                        'OB or OW', 'US or OW', 'US or SS or OW'))


def tag_name(tag: BaseTag) -> str:
    '''Get the keyword for a tag, or its '(GGGG,EEEE)' key if it isn't known'''
    info = lookup_tag(tag)
    if info is None:
        return tag_key(tag)
    return info.name


def _read_numeric(value: Any) -> Any:
    if isinstance(value, (MultiValue, list, tuple)):
        return [x for x in value]
    return value


def _read_binary(value: Any, little_endian: bool) -> Optional[int]:
    if not isinstance(value, (bytes, bytearray)) or len(value) not in (2, 4):
        return None
    return int.from_bytes(value, 'little' if little_endian else 'big')


def _read_string(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, (MultiValue, list, tuple)):
        return '\\'.join(str(x) for x in value)
    if isinstance(value, bytes):
        return value.decode('ascii', errors='replace')
    return str(value)


def _pixel_range(raw_elem: Any,
                 data: Optional[BufferType],
                 little_endian: bool) -> Optional[PixelRange]:
    length = getattr(raw_elem, 'length', None)
    value_tell = getattr(raw_elem, 'value_tell', None)
    value = raw_elem.value
    if data is not None and value_tell is not None and length is not None:
        # Offsets are only meaningful if the stream wasn't transformed (e.g.
        # deflated), so spot check the start of the value
        n_check = min(16, length)
        if (value_tell + length <= len(data) and
            (not isinstance(value, (bytes, bytearray)) or
             bytes(data[value_tell:value_tell + n_check]) == value[:n_check])):
            return PixelRange(data, value_tell, length, little_endian)
    # Element was already converted, just reference its own bytes
    if not isinstance(value, (bytes, bytearray)):
        return None
    return PixelRange(value, 0, len(value), little_endian)


def _is_little_endian(ds: Dataset) -> bool:
    file_meta = getattr(ds, 'file_meta', None)
    if file_meta is not None:
        tsyntax = getattr(file_meta, 'TransferSyntaxUID', None)
        if tsyntax is not None:
            try:
                return bool(tsyntax.is_little_endian)
            except (AttributeError, ValueError):
                pass
    is_little = getattr(ds, 'is_little_endian', None)
    return True if is_little is None else bool(is_little)


def _is_encapsulated(ds: Dataset) -> bool:
    file_meta = getattr(ds, 'file_meta', None)
    tsyntax = getattr(file_meta, 'TransferSyntaxUID', None)
    if tsyntax is None:
        return False
    try:
        return bool(tsyntax.is_encapsulated)
    except (AttributeError, ValueError):
        return False


def read_tags(ds: Dataset,
              data: Optional[BufferType] = None,
              little_endian: Optional[bool] = None) -> Dict[str, Any]:
    '''Read every element of a decoded data set into a plain dict

    Parameters
    ----------
    ds
        The data set produced by `decode_dataset`

    data
        The buffer the data set was decoded from, lets the pixel data be
        referenced without copying it

    little_endian
        Byte order of the data, determined from `ds` if not specified
    '''
    if not isinstance(ds, Dataset):
        raise UnsupportedElementError(
            "Can't read tags from a %s" % type(ds).__name__
        )
    if little_endian is None:
        little_endian = _is_little_endian(ds)
    res: Dict[str, Any] = {}
    for tag in list(ds.keys()):
        name = tag_name(tag)
        if tag == PIXEL_DATA_TAG:
            raw_elem = ds.get_item(tag)
            if (_is_encapsulated(ds) or
                getattr(raw_elem, 'length', None) == UNDEFINED_LENGTH or
                getattr(raw_elem, 'is_undefined_length', False)):
                log.warning("%s contains fragments which isn't supported", name)
                continue
            pix_range = _pixel_range(raw_elem, data, little_endian)
            if pix_range is not None:
                res[name] = pix_range
            continue
        elem = ds[tag]
        vr = elem.VR
        if vr == 'SQ':
            res[name] = _read_items(name, elem.value, little_endian)
            continue
        if lookup_tag(tag) is None and vr in (None, '', 'UN'):
            log.warning("%s vr is unknown, skipping", name)
            continue
        if vr in numeric_vrs:
            value = _read_numeric(elem.value)
        elif vr == 'AT':
            value = _read_attr_tag(elem.value)
        elif vr in binary_vrs:
            value = _read_binary(elem.value, little_endian)
            if value is None:
                continue
        else:
            value = _read_string(elem.value)
        res[name] = value
    return res


def _read_attr_tag(value: Any) -> Union[str, List[str]]:
    if isinstance(value, (MultiValue, list)):
        return [tag_key(Tag(x)) for x in value]
    return tag_key(Tag(value))


def _read_items(name: str,
                items: Iterable[Any],
                little_endian: bool) -> List[Dict[str, Any]]:
    res = []
    for item in items:
        if not isinstance(item, Dataset):
            log.warning("Skipping unsupported item in sequence %s", name)
            continue
        res.append(read_tags(item, little_endian=little_endian))
    return res


def extract(tags: Iterable[str], raw: Dict[str, Any]) -> Dict[str, Any]:
    '''Get the subset of `raw` for the names in `tags`

    Names missing from `raw` are just left out, and tag order is preserved.
    '''
    res = {}
    for tag in tags:
        if tag in raw:
            res[tag] = raw[tag]
    return res
