from io import BytesIO
from typing import Any, Optional, Sequence

import numpy as np
from pydicom.dataset import Dataset, FileDataset, FileMetaDataset
from pydicom.encaps import encapsulate
from pydicom.uid import (ExplicitVRBigEndian, ExplicitVRLittleEndian,
                         RLELossless, generate_uid)
from pytest import fixture

from ..conf import _default_conf, DcmVolConfig


CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"


def make_dataset(
    patient_id: Optional[str] = "P1",
    study_id: Optional[str] = "T1",
    series_number: Optional[int] = 1,
    instance_number: Optional[int] = 1,
    rows: int = 2,
    cols: int = 3,
    bits: int = 16,
    pix_rep: int = 0,
    pixels: Optional[Sequence[Any]] = None,
    slope: Optional[float] = None,
    intercept: Optional[float] = None,
    position: Sequence[float] = (0.0, 0.0, 0.0),
    orientation: Sequence[float] = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0),
    spacing: Sequence[float] = (0.5, 0.5),
    thickness: Optional[float] = 2.0,
) -> FileDataset:
    """Build a small single frame image, primary tags set to None are left out"""
    sop_uid = generate_uid()
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = CT_IMAGE_STORAGE
    file_meta.MediaStorageSOPInstanceUID = sop_uid
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    ds = FileDataset("test.dcm", {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.SOPInstanceUID = sop_uid
    ds.PatientName = "Test^Patient"
    if patient_id is not None:
        ds.PatientID = patient_id
    ds.StudyInstanceUID = generate_uid()
    ds.StudyDate = "20200101"
    if study_id is not None:
        ds.StudyID = study_id
    ds.SeriesInstanceUID = generate_uid()
    ds.Modality = "CT"
    ds.SeriesDescription = "test series"
    if series_number is not None:
        ds.SeriesNumber = series_number
    if instance_number is not None:
        ds.InstanceNumber = instance_number
    ds.ImagePositionPatient = list(position)
    ds.ImageOrientationPatient = list(orientation)
    ds.PixelSpacing = list(spacing)
    if thickness is not None:
        ds.SliceThickness = thickness
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.Rows = rows
    ds.Columns = cols
    ds.BitsAllocated = bits
    ds.BitsStored = bits
    ds.HighBit = bits - 1
    ds.PixelRepresentation = pix_rep
    if slope is not None:
        ds.RescaleSlope = slope
    if intercept is not None:
        ds.RescaleIntercept = intercept
    if pixels is None:
        pixels = range(rows * cols)
    kind = "u" if pix_rep == 0 else "i"
    arr = np.asarray(pixels, dtype="<%s%d" % (kind, bits // 8))
    ds.add_new(0x7FE00010, "OB" if bits == 8 else "OW", arr.tobytes())
    ds.is_little_endian = True
    ds.is_implicit_VR = False
    return ds


def make_fragmented_dataset(**kwargs) -> FileDataset:
    """Same as `make_dataset` but the pixel data is RLE encapsulated"""
    ds = make_dataset(**kwargs)
    ds.file_meta.TransferSyntaxUID = RLELossless
    ds.add_new(0x7FE00010, "OB", encapsulate([b"\x00\x01" * 4]))
    ds["PixelData"].is_undefined_length = True
    return ds


def make_big_endian_dataset(pixels: Sequence[int], **kwargs) -> FileDataset:
    """Same as `make_dataset` but written with Explicit VR Big Endian"""
    ds = make_dataset(pixels=pixels, **kwargs)
    ds.file_meta.TransferSyntaxUID = ExplicitVRBigEndian
    ds.PixelData = np.asarray(pixels, dtype=">u2").tobytes()
    ds.is_little_endian = False
    return ds


def dataset_to_bytes(ds: Dataset) -> bytes:
    buf = BytesIO()
    ds.save_as(buf, write_like_original=False)
    return buf.getvalue()


@fixture
def make_dicom_bytes():
    """Factory for the raw bytes of a DICOM file"""

    def _make_dicom_bytes(**kwargs):
        return dataset_to_bytes(make_dataset(**kwargs))

    return _make_dicom_bytes


@fixture
def make_dicom_file(tmp_path):
    """Factory that writes a DICOM file under a temp dir, returns the path"""
    counter = [0]

    def _make_dicom_file(sub_dir: str = "", name: Optional[str] = None, **kwargs):
        out_dir = tmp_path / sub_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        if name is None:
            name = "img%03d.dcm" % counter[0]
            counter[0] += 1
        out_path = out_dir / name
        out_path.write_bytes(dataset_to_bytes(make_dataset(**kwargs)))
        return out_path

    return _make_dicom_file


@fixture
def make_dcmvol_config_file(tmp_path):
    conf_path = tmp_path / "conf" / "dcmvol_conf.toml"

    def _make_dcmvol_config_file(config_str=_default_conf):
        conf_path.parent.mkdir(parents=True, exist_ok=True)
        conf_path.write_text(config_str)
        return str(conf_path)

    return _make_dcmvol_config_file


@fixture
def make_dcmvol_config(make_dcmvol_config_file):
    def _make_dcmvol_config(config_str=_default_conf):
        config_path = make_dcmvol_config_file(config_str)
        return DcmVolConfig(config_path)

    return _make_dcmvol_config
