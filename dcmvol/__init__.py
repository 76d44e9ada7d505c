"""Parse DICOM files into a patient/study/series/image hierarchy and rebuild
image volumes for each series"""
from . import info, conf, hierarchy, metadata, parse, tags, util, volume
from .hierarchy import DicomHierarchy, MissingKeyPolicy
from .parse import ParseDicomError, ParseResult, parse_dicom_files
from .volume import ImageVolume, SliceOrder


__version__ = info.VERSION


__all__ = [
    "conf",
    "hierarchy",
    "metadata",
    "parse",
    "tags",
    "util",
    "volume",
    "DicomHierarchy",
    "MissingKeyPolicy",
    "ParseDicomError",
    "ParseResult",
    "parse_dicom_files",
    "ImageVolume",
    "SliceOrder",
]
