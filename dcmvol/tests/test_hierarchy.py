"""Tests for the dcmvol.hierarchy module"""
import json, random, threading
from concurrent.futures import ThreadPoolExecutor

from pytest import raises, mark

from .._globals import HierarchyLevel
from ..hierarchy import (
    DicomHierarchy,
    DicomImage,
    DicomSeries,
    DuplicateImageError,
    MissingKeyPolicy,
    MissingPrimaryTagError,
    UNDEFINED_KEY,
    get_key_path,
)
from ..metadata import PixelRange
from ..util import json_serializer


def make_raw(pid="P1", study="T1", series="S1", inst="1", **kwargs):
    res = {
        "PatientID": pid,
        "PatientName": "Doe^Jane",
        "StudyID": study,
        "StudyDate": "20200101",
        "SeriesNumber": series,
        "Modality": "MR",
        "InstanceNumber": inst,
        "SOPInstanceUID": "1.2.3.%s.%s" % (series, inst),
        "Rows": 2,
        "Columns": 2,
        "Manufacturer": "ACME",
    }
    for key, val in kwargs.items():
        if val is None:
            res.pop(key, None)
        else:
            res[key] = val
    return res


def test_key_path():
    assert get_key_path(make_raw()) == ("P1", "T1", "S1", "1")
    assert get_key_path(make_raw(series=4, inst=10)) == ("P1", "T1", "4", "10")


def test_missing_key_undefined():
    raw = make_raw(StudyID=None)
    assert get_key_path(raw) == ("P1", UNDEFINED_KEY, "S1", "1")
    hier = DicomHierarchy()
    hier.add(raw)
    assert UNDEFINED_KEY in hier["P1"].studies


def test_missing_key_reject():
    hier = DicomHierarchy(missing_key=MissingKeyPolicy.REJECT)
    with raises(MissingPrimaryTagError):
        hier.add(make_raw(InstanceNumber=None))
    assert len(hier) == 0


def test_single_add():
    hier = DicomHierarchy()
    keys = hier.add(make_raw(), "/tmp/foo.dcm")
    assert keys == ("P1", "T1", "S1", "1")
    patient = hier["P1"]
    assert patient.meta_data == {"PatientID": "P1", "PatientName": "Doe^Jane"}
    study = patient.studies["T1"]
    assert study.meta_data == {"StudyID": "T1", "StudyDate": "20200101"}
    series = study.series["S1"]
    assert series.meta_data == {"SeriesNumber": "S1", "Modality": "MR"}
    image = series.images["1"]
    assert isinstance(image, DicomImage)
    assert image.file == "/tmp/foo.dcm"
    assert "Manufacturer" not in image.meta_data
    assert image.meta_data["Rows"] == 2


def test_merge_keeps_first_meta():
    hier = DicomHierarchy()
    hier.add(make_raw(inst="1"))
    hier.add(make_raw(inst="2", PatientName="Other^Name", Modality="CT"))
    assert len(hier) == 1
    assert hier["P1"].meta_data["PatientName"] == "Doe^Jane"
    series = hier.get_series("P1", "T1", "S1")
    assert series.meta_data["Modality"] == "MR"
    assert list(series.images) == ["1", "2"]


def test_duplicate_image():
    hier = DicomHierarchy()
    hier.add(make_raw())
    with raises(DuplicateImageError) as exc_info:
        hier.add(make_raw())
    assert str(exc_info.value) == "Image 1 already added to series S1."
    assert len(hier.get_series("P1", "T1", "S1").images) == 1


@mark.parametrize("order", [(0, 1), (1, 0)])
def test_insertion_order_membership(order):
    raws = [make_raw(series="S1"), make_raw(series="S2")]
    hier = DicomHierarchy()
    for idx in order:
        hier.add(raws[idx])
    assert hier.n_patients() == 1
    assert hier.n_studies() == 1
    assert hier.n_series() == 2
    assert set(hier["P1"].studies["T1"].series) == {"S1", "S2"}
    for series in hier["P1"].studies["T1"].series.values():
        assert len(series.images) == 1


def test_views_are_read_only():
    hier = DicomHierarchy()
    hier.add(make_raw())
    with raises(TypeError):
        hier["P1"].studies["T2"] = None


def test_concurrent_add():
    n_series = 4
    n_inst = 50
    raws = [
        make_raw(pid="P%d" % (s % 2), series=str(s), inst=str(i))
        for s in range(n_series)
        for i in range(n_inst)
    ]
    # One duplicate of every image, exactly one of each pair should fail
    raws = raws + [dict(r) for r in raws]
    random.Random(1234).shuffle(raws)
    hier = DicomHierarchy()
    barrier = threading.Barrier(8)
    errors = []
    lock = threading.Lock()

    def worker(chunk):
        barrier.wait()
        for raw in chunk:
            try:
                hier.add(raw)
            except DuplicateImageError as e:
                with lock:
                    errors.append(e)

    chunks = [raws[i::8] for i in range(8)]
    with ThreadPoolExecutor(8) as executor:
        list(executor.map(worker, chunks))
    assert len(errors) == n_series * n_inst
    assert hier.n_patients() == 2
    assert hier.n_series() == n_series
    assert hier.n_instances() == n_series * n_inst


def test_walk():
    hier = DicomHierarchy()
    hier.add(make_raw(inst="1"))
    hier.add(make_raw(inst="2"))
    paths = [path for path, _ in hier.walk()]
    assert paths == [
        ("P1",),
        ("P1", "T1"),
        ("P1", "T1", "S1"),
        ("P1", "T1", "S1", "1"),
        ("P1", "T1", "S1", "2"),
    ]
    levels = [entity.level for _, entity in hier.walk()]
    assert levels[:3] == [HierarchyLevel.PATIENT,
                          HierarchyLevel.STUDY,
                          HierarchyLevel.SERIES]


def test_to_dict_and_json():
    hier = DicomHierarchy()
    buf = bytes(16)
    hier.add(make_raw(PixelData=PixelRange(buf, 8, 8)), "/data/a.dcm")
    res = hier.to_dict()
    img = res["P1"]["studies"]["T1"]["series"]["S1"]["images"]["1"]
    assert img["PixelData"] == {"offset": 8, "length": 8}
    assert img["file"] == "/data/a.dcm"
    json_res = json.loads(json_serializer.dumps(hier))
    assert json_res == {"patients": res}
    assert json.loads(hier.to_json()) == {"patients": res}
    assert hier.to_json() == json_serializer.dumps(hier, indent=4)


def test_bytes_source_name():
    hier = DicomHierarchy()
    hier.add(make_raw(), b"\0" * 10)
    img = hier.to_dict()["P1"]["studies"]["T1"]["series"]["S1"]["images"]["1"]
    assert img["file"] == "<10 bytes in memory>"


def test_to_tree():
    hier = DicomHierarchy()
    hier.add(make_raw(inst="1"))
    hier.add(make_raw(inst="2"))
    tree = hier.to_tree()
    lines = tree.split("\n")
    assert lines[0] == "1 patients"
    assert "ID: P1 | Name: Doe^Jane | 1 studies" in lines[1]
    assert "S1 | NA | MR | 2 instances" in tree
    short = hier.to_tree(max_level=HierarchyLevel.SERIES)
    assert "1.2.3.S1.1" not in short
    assert "1.2.3.S1.1" in tree


def test_series_str():
    hier = DicomHierarchy()
    hier.add(make_raw())
    series = hier.get_series("P1", "T1", "S1")
    assert isinstance(series, DicomSeries)
    assert str(hier) == "DicomHierarchy: 1 patients, 1 studies, 1 series, 1 instances"
