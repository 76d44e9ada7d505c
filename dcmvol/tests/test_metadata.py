"""Tests for the dcmvol.metadata module"""
import logging

import numpy as np
from pydicom.dataset import Dataset
from pydicom.sequence import Sequence
from pytest import raises

from ..metadata import (
    PixelRange,
    UnsupportedElementError,
    decode_dataset,
    extract,
    read_tags,
)
from ..util import DicomDataError
from .conftest import (dataset_to_bytes, make_big_endian_dataset, make_dataset,
                       make_fragmented_dataset)


def test_read_tags_values(make_dicom_bytes):
    data = make_dicom_bytes(patient_id="P7", series_number=3, instance_number=12)
    raw = read_tags(decode_dataset(data), data)
    assert raw["PatientID"] == "P7"
    assert raw["PatientName"] == "Test^Patient"
    assert raw["SeriesNumber"] == "3"
    assert raw["InstanceNumber"] == "12"
    assert raw["Rows"] == 2
    assert raw["Columns"] == 3
    assert raw["BitsAllocated"] == 16
    assert [float(x) for x in raw["PixelSpacing"].split("\\")] == [0.5, 0.5]


def test_pixel_range_references_buffer(make_dicom_bytes):
    pixels = [10, 20, 30, 40, 50, 60]
    data = make_dicom_bytes(pixels=pixels)
    raw = read_tags(decode_dataset(data), data)
    pix = raw["PixelData"]
    assert isinstance(pix, PixelRange)
    assert pix.buffer is data
    assert pix.length == 12
    assert pix.little_endian
    vals = np.frombuffer(pix.view(), dtype="<u2")
    assert vals.tolist() == pixels


def test_pixel_range_without_buffer(make_dicom_bytes):
    data = make_dicom_bytes(pixels=[1, 2, 3, 4, 5, 6])
    raw = read_tags(decode_dataset(data))
    pix = raw["PixelData"]
    assert pix.offset == 0
    assert np.frombuffer(pix.view(), dtype="<u2").tolist() == [1, 2, 3, 4, 5, 6]


def test_pixel_range_big_endian():
    data = dataset_to_bytes(make_big_endian_dataset([1, 2, 256, 4, 5, 6]))
    raw = read_tags(decode_dataset(data), data)
    pix = raw["PixelData"]
    assert not pix.little_endian
    assert raw["Rows"] == 2
    assert np.frombuffer(pix.view(), dtype=">u2").tolist() == [1, 2, 256, 4, 5, 6]


def test_fragmented_pixel_data_skipped(caplog):
    data = dataset_to_bytes(make_fragmented_dataset())
    with caplog.at_level(logging.WARNING, logger="dcmvol.metadata"):
        raw = read_tags(decode_dataset(data), data)
    assert "PixelData" not in raw
    assert raw["PatientID"] == "P1"
    assert "PixelData contains fragments which isn't supported" in caplog.text


def test_pixel_range_bounds():
    with raises(DicomDataError):
        PixelRange(b"1234", 2, 4)


def test_sequence_items():
    ds = make_dataset()
    item = Dataset()
    item.CodeValue = "123"
    item.CodeMeaning = "thing"
    ds.ProcedureCodeSequence = Sequence([item])
    data = dataset_to_bytes(ds)
    raw = read_tags(decode_dataset(data), data)
    assert raw["ProcedureCodeSequence"] == [
        {"CodeValue": "123", "CodeMeaning": "thing"}
    ]


def test_attribute_tag_values():
    ds = make_dataset()
    ds.add_new(0x00209165, "AT", 0x00200032)
    data = dataset_to_bytes(ds)
    raw = read_tags(decode_dataset(data), data)
    assert raw["DimensionIndexPointer"] == "(0020,0032)"


def test_unknown_vr_skipped(caplog):
    ds = Dataset()
    ds.PatientID = "P1"
    ds.add_new(0x00091001, "UN", b"\x01\x02\x03")
    with caplog.at_level(logging.WARNING):
        raw = read_tags(ds)
    assert raw == {"PatientID": "P1"}
    assert "vr is unknown" in caplog.text


def test_unsupported_input():
    with raises(UnsupportedElementError):
        read_tags({"PatientID": "P1"})


def test_extract():
    raw = {"PatientID": "P1", "PatientName": "Doe^Jane", "Rows": 2}
    res = extract(("PatientName", "PatientSex", "PatientID"), raw)
    assert res == {"PatientName": "Doe^Jane", "PatientID": "P1"}
    assert list(res) == ["PatientName", "PatientID"]
