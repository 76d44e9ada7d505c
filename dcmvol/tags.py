"""Declare which DICOM tags each level of the hierarchy cares about

The tag names are DICOM keywords, and every one of them must be known to the
DICOM data dictionary shipped with pydicom. This is checked once when the
hierarchy module is imported, since a bad declaration is a programming error
rather than a problem with the input data.
"""
from __future__ import annotations
import logging
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from attrs import frozen, field
from pydicom.datadict import DicomDictionary
from pydicom.tag import BaseTag, Tag

from ._globals import HierarchyLevel


log = logging.getLogger(__name__)


class InvalidTagConfigError(Exception):
    """Raised if the static tag declarations are malformed"""


@frozen
class TagInfo:
    """Dictionary entry for a single tag"""

    name: str
    """The DICOM keyword for the tag"""

    vr: str
    """Value representation code, e.g. 'US' or 'DS'"""


def tag_key(tag: BaseTag) -> str:
    """Format a tag as '(GGGG,EEEE)', which is how we key the dictionary"""
    return "(%04X,%04X)" % (tag.group, tag.element)


@lru_cache(maxsize=None)
def tag_dictionary() -> Dict[str, TagInfo]:
    """Map '(GGGG,EEEE)' keys to the name and VR of every known tag"""
    res = {}
    for tag, entry in DicomDictionary.items():
        vr, _, _, _, keyword = entry
        if not keyword:
            continue
        res[tag_key(Tag(tag))] = TagInfo(keyword, vr)
    return res


@lru_cache(maxsize=None)
def dictionary_names() -> FrozenSet[str]:
    """All of the tag names known to the dictionary"""
    return frozenset(info.name for info in tag_dictionary().values())


def lookup_tag(tag: BaseTag) -> Optional[TagInfo]:
    """Get the dictionary entry for `tag`, or None if it isn't known"""
    return tag_dictionary().get(tag_key(tag))


@frozen
class EntityTags:
    """The static tag declaration for one kind of entity"""

    primary: str
    """Tag whose value identifies an entity at its level"""

    tags: Tuple[str, ...] = field(converter=tuple)
    """All tags the entity copies from the raw metadata, in order"""


entity_tags: Dict[HierarchyLevel, EntityTags] = {
    HierarchyLevel.PATIENT: EntityTags(
        "PatientID",
        ("PatientID",
         "PatientName",
         "PatientBirthDate",
         "PatientSex",
        ),
    ),
    HierarchyLevel.STUDY: EntityTags(
        "StudyID",
        ("StudyID",
         "StudyInstanceUID",
         "StudyDate",
         "StudyTime",
         "AccessionNumber",
         "StudyDescription",
        ),
    ),
    HierarchyLevel.SERIES: EntityTags(
        "SeriesNumber",
        ("SeriesNumber",
         "SeriesInstanceUID",
         "SeriesDate",
         "SeriesTime",
         "Modality",
         "SeriesDescription",
         "ProtocolName",
         "FrameOfReferenceUID",
        ),
    ),
    HierarchyLevel.IMAGE: EntityTags(
        "InstanceNumber",
        ("InstanceNumber",
         "SOPInstanceUID",
         "PatientPosition",
         "PatientOrientation",
         "ImagePositionPatient",
         "ImageOrientationPatient",
         "PixelSpacing",
         "SliceThickness",
         "SliceLocation",
         "SamplesPerPixel",
         "PlanarConfiguration",
         "PhotometricInterpretation",
         "Rows",
         "Columns",
         "BitsAllocated",
         "BitsStored",
         "HighBit",
         "PixelRepresentation",
         "PixelData",
         "RescaleIntercept",
         "RescaleSlope",
        ),
    ),
}
'''Map each HierarchyLevel to the tags its entities hold'''


def validate_entity_tags(
    name: str,
    decl: EntityTags,
    known_names: Optional[Iterable[str]] = None,
) -> None:
    """Check a single tag declaration against the dictionary

    Parameters
    ----------
    name
        Name of the entity kind, only used in error messages

    decl
        The declaration to check

    known_names
        The set of valid tag names, defaults to the whole DICOM dictionary

    Raises
    ------
    InvalidTagConfigError
        If the primary tag isn't among the declared tags, or a declared tag
        isn't in the dictionary
    """
    if known_names is None:
        known = dictionary_names()
    else:
        known = frozenset(known_names)
    if decl.primary not in decl.tags:
        raise InvalidTagConfigError(
            f'The primary tag of {name} ("{decl.primary}") is not included '
            f"in its list of tags ({list(decl.tags)})"
        )
    for tag in decl.tags:
        if tag not in known:
            raise InvalidTagConfigError(
                f'The tag "{tag}" associated with {name} is not defined in '
                "the DICOM dictionary"
            )


def validate_all(
    decls: Optional[Dict[HierarchyLevel, EntityTags]] = None,
    known_names: Optional[Iterable[str]] = None,
) -> None:
    """Validate the declarations for every level of the hierarchy"""
    if decls is None:
        decls = entity_tags
    if known_names is not None:
        known_names = frozenset(known_names)
    for level, decl in decls.items():
        validate_entity_tags(level.name.lower(), decl, known_names)
    log.debug("Validated tag declarations for %d entity kinds", len(decls))
