'''Organize DICOM meta data into the patient/study/series/image hierarchy

Each level is keyed on the value of its "primary" tag (see `tags.entity_tags`).
Entities are created the first time their key is seen, and any later data
with the same key is merged into the existing entity instead. Insertion is
safe to do from multiple threads at once: every node guards its own children
with a lock, so adding to different branches doesn't contend.
'''
from __future__ import annotations
import logging, threading
from collections import defaultdict
from enum import Enum
from types import MappingProxyType
from typing import (Any, ClassVar, Dict, Iterator, List, Mapping, Optional,
                    Tuple, Type)

from tree_format import format_tree

from ._globals import HierarchyLevel
from .metadata import PixelRange, extract
from .tags import EntityTags, entity_tags, validate_all
from .util import (DicomDataError, DuplicateDataError, SourceType,
                   CustomJsonSerializable, json_serializer, source_name)
from .volume import ImageVolume, SliceOrder, reconstruct_volume


log = logging.getLogger(__name__)


# Bad declarations should stop us before any data is touched
validate_all()


UNDEFINED_KEY = 'undefined'
'''Key used for data missing the primary tag, under the UNDEFINED policy'''


class MissingKeyPolicy(Enum):
    '''What to do when the data doesn't have a primary tag for some level'''

    UNDEFINED = 'undefined'
    '''Group it with any other such data under the `UNDEFINED_KEY`'''

    REJECT = 'reject'
    '''Raise a `MissingPrimaryTagError`'''


class MissingPrimaryTagError(DicomDataError):
    '''The data doesn't identify itself at some level of the hierarchy'''


class DuplicateImageError(DuplicateDataError):
    '''The image was already added to the series'''

    def __init__(self, series_key: str, instance_number: str):
        self.series_key = series_key
        self.instance_number = instance_number

    def __str__(self) -> str:
        return "Image %s already added to series %s." % (self.instance_number,
                                                          self.series_key)


KeyPath = Tuple[str, ...]
'''Primary tag values for the PATIENT, STUDY, SERIES, and IMAGE levels'''


def format_key(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return '\\'.join(str(x) for x in value)
    return str(value)


def get_key_path(raw: Mapping[str, Any],
                 missing_key: MissingKeyPolicy = MissingKeyPolicy.UNDEFINED
                 ) -> KeyPath:
    '''Get the primary tag value for every level of the hierarchy'''
    keys = []
    for lvl in HierarchyLevel:
        primary = entity_tags[lvl].primary
        val = raw.get(primary)
        if val is None:
            if missing_key == MissingKeyPolicy.REJECT:
                raise MissingPrimaryTagError(
                    "The data is missing the %s (%s level)" % (primary,
                                                               lvl.name)
                )
            log.debug("No %s in data, using '%s'", primary, UNDEFINED_KEY)
            keys.append(UNDEFINED_KEY)
        else:
            keys.append(format_key(val))
    return tuple(keys)


class DicomEntity:
    '''Common functionality for all levels of the hierarchy'''

    level: ClassVar[HierarchyLevel]

    def __init__(self, key: str):
        self._key = key
        self.meta_data: Dict[str, Any] = {}

    @classmethod
    def tag_decl(cls) -> EntityTags:
        return entity_tags[cls.level]

    @classmethod
    def primary_tag(cls) -> str:
        return cls.tag_decl().primary

    @classmethod
    def tags(cls) -> Tuple[str, ...]:
        return cls.tag_decl().tags

    @property
    def key(self) -> str:
        '''Value of the primary tag this entity is filed under'''
        return self._key

    def extract_tags(self, raw: Mapping[str, Any]) -> None:
        '''Copy our declared tags from the `raw` meta data'''
        self.meta_data.update(extract(self.tags(), raw))

    def __repr__(self) -> str:
        return '%s(%r)' % (self.__class__.__name__, self._key)


class _ParentNode:
    '''A node that owns a mapping of child entities keyed on their primary tag'''

    child_type: ClassVar[Type[DicomEntity]]

    def __init__(self) -> None:
        self._children: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _upsert(self,
                raw: Mapping[str, Any],
                source: Optional[SourceType],
                keys: KeyPath) -> None:
        key = keys[self.child_type.level]
        with self._lock:
            child = self._children.get(key)
            if child is None:
                self._children[key] = self.child_type(key, raw, source, keys)
                return
        child.add_meta_data(raw, source, keys)

    def _child_items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self._children.items())


class DicomImage(DicomEntity):
    '''A single image (slice), along with the file it came from'''

    level = HierarchyLevel.IMAGE

    def __init__(self,
                 key: str,
                 raw: Mapping[str, Any],
                 source: Optional[SourceType] = None,
                 keys: Optional[KeyPath] = None):
        super().__init__(key)
        self.file = source
        self.extract_tags(raw)

    @property
    def pixel_range(self) -> Optional[PixelRange]:
        return self.meta_data.get('PixelData')


class DicomSeries(_ParentNode, DicomEntity):
    '''Series of images that can be combined into a single volume'''

    level = HierarchyLevel.SERIES

    child_type = DicomImage

    def __init__(self,
                 key: str,
                 raw: Mapping[str, Any],
                 source: Optional[SourceType],
                 keys: KeyPath):
        _ParentNode.__init__(self)
        DicomEntity.__init__(self, key)
        self._n_reconstructed = 0
        self.extract_tags(raw)
        self.add_meta_data(raw, source, keys)

    @property
    def images(self) -> Mapping[str, DicomImage]:
        '''The images keyed by InstanceNumber, in the order they were added'''
        return MappingProxyType(self._children)

    @property
    def n_reconstructed(self) -> int:
        '''Number of times a volume has been built from this series'''
        return self._n_reconstructed

    def mark_reconstructed(self) -> int:
        '''Note that a volume was built, returns the previous count'''
        with self._lock:
            prev = self._n_reconstructed
            self._n_reconstructed += 1
        return prev

    def add_meta_data(self,
                      raw: Mapping[str, Any],
                      source: Optional[SourceType],
                      keys: KeyPath) -> None:
        inst_num = keys[HierarchyLevel.IMAGE]
        with self._lock:
            if inst_num in self._children:
                raise DuplicateImageError(self._key, inst_num)
            self._children[inst_num] = DicomImage(inst_num, raw, source)

    def get_image_data(self,
                       slice_order: Optional[SliceOrder] = None,
                       output_dtype: Any = None) -> ImageVolume:
        '''Build the volume for this series

        The pixel data isn't stored on the series (to save memory), so it is
        rebuilt on every call. Cache the result if you need it again.
        '''
        if slice_order is None:
            slice_order = SliceOrder.INSTANCE_NUMBER
        return reconstruct_volume(self, slice_order, output_dtype)


class DicomStudy(_ParentNode, DicomEntity):

    level = HierarchyLevel.STUDY

    child_type = DicomSeries

    def __init__(self,
                 key: str,
                 raw: Mapping[str, Any],
                 source: Optional[SourceType],
                 keys: KeyPath):
        _ParentNode.__init__(self)
        DicomEntity.__init__(self, key)
        self.extract_tags(raw)
        self.add_meta_data(raw, source, keys)

    @property
    def series(self) -> Mapping[str, DicomSeries]:
        '''The series keyed by SeriesNumber'''
        return MappingProxyType(self._children)

    def add_meta_data(self,
                      raw: Mapping[str, Any],
                      source: Optional[SourceType],
                      keys: KeyPath) -> None:
        self._upsert(raw, source, keys)


class DicomPatient(_ParentNode, DicomEntity):

    level = HierarchyLevel.PATIENT

    child_type = DicomStudy

    def __init__(self,
                 key: str,
                 raw: Mapping[str, Any],
                 source: Optional[SourceType],
                 keys: KeyPath):
        _ParentNode.__init__(self)
        DicomEntity.__init__(self, key)
        self.extract_tags(raw)
        self.add_meta_data(raw, source, keys)

    @property
    def studies(self) -> Mapping[str, DicomStudy]:
        '''The studies keyed by StudyID'''
        return MappingProxyType(self._children)

    def add_meta_data(self,
                      raw: Mapping[str, Any],
                      source: Optional[SourceType],
                      keys: KeyPath) -> None:
        self._upsert(raw, source, keys)


def _json_meta(meta_data: Mapping[str, Any]) -> Dict[str, Any]:
    res = {}
    for key, val in meta_data.items():
        if isinstance(val, PixelRange):
            val = {'offset': val.offset, 'length': val.length}
        res[key] = val
    return res


class DicomHierarchy(_ParentNode, CustomJsonSerializable):
    '''All of the patients seen, keyed by PatientID

    Parameters
    ----------
    missing_key
        How to handle data that is missing a primary tag
    '''

    child_type = DicomPatient

    def __init__(self,
                 missing_key: MissingKeyPolicy = MissingKeyPolicy.UNDEFINED):
        super().__init__()
        self.missing_key = missing_key

    def add(self,
            raw: Mapping[str, Any],
            source: Optional[SourceType] = None) -> KeyPath:
        '''Add the meta data for one file, returns its key path

        Raises
        ------
        DuplicateImageError
            The image is already in the hierarchy

        MissingPrimaryTagError
            If a primary tag is missing and the policy is REJECT
        '''
        keys = get_key_path(raw, self.missing_key)
        self._upsert(raw, source, keys)
        return keys

    def __getitem__(self, patient_id: str) -> DicomPatient:
        return self._children[patient_id]

    def __contains__(self, patient_id: object) -> bool:
        return patient_id in self._children

    def __iter__(self) -> Iterator[str]:
        for patient_id, _ in self._child_items():
            yield patient_id

    def __len__(self) -> int:
        return len(self._children)

    def keys(self) -> List[str]:
        return [k for k, _ in self._child_items()]

    def values(self) -> List[DicomPatient]:
        return [v for _, v in self._child_items()]

    def items(self) -> List[Tuple[str, DicomPatient]]:
        return self._child_items()

    @property
    def patients(self) -> Mapping[str, DicomPatient]:
        return MappingProxyType(self._children)

    def get_series(self,
                   patient_id: str,
                   study_id: str,
                   series_number: str) -> DicomSeries:
        '''Lookup a single series, raises KeyError if it doesn't exist'''
        return self[patient_id].studies[study_id].series[series_number]

    def walk(self) -> Iterator[Tuple[KeyPath, DicomEntity]]:
        '''Generate (key_path, entity) for every entity in depth-first order'''
        stack: List[Tuple[KeyPath, Any]] = [((k,), v) for k, v
                                            in reversed(self._child_items())]
        while stack:
            path, entity = stack.pop()
            yield path, entity
            if isinstance(entity, _ParentNode):
                for key, child in reversed(entity._child_items()):
                    stack.append((path + (key,), child))

    def n_patients(self) -> int:
        return len(self._children)

    def n_studies(self) -> int:
        return sum(len(p.studies) for p in self.values())

    def n_series(self) -> int:
        return sum(len(st.series) for p in self.values()
                   for st in p.studies.values())

    def n_instances(self) -> int:
        return sum(1 for _, e in self.walk() if isinstance(e, DicomImage))

    def to_dict(self) -> Dict[str, Any]:
        '''Nested dicts of the meta data, suitable for JSON conversion'''
        res: Dict[str, Any] = {}
        for pat_id, patient in self.items():
            pat_info = _json_meta(patient.meta_data)
            studies: Dict[str, Any] = {}
            for study_id, study in patient.studies.items():
                study_info = _json_meta(study.meta_data)
                series: Dict[str, Any] = {}
                for series_num, ser in study.series.items():
                    ser_info = _json_meta(ser.meta_data)
                    images = {}
                    for inst_num, image in ser.images.items():
                        img_info = _json_meta(image.meta_data)
                        if image.file is not None:
                            img_info['file'] = source_name(image.file)
                        images[inst_num] = img_info
                    ser_info['images'] = images
                    series[series_num] = ser_info
                study_info['series'] = series
                studies[study_id] = study_info
            pat_info['studies'] = studies
            res[pat_id] = pat_info
        return res

    def to_json_dict(self) -> Dict[str, Any]:
        return {'patients': self.to_dict()}

    def to_json(self) -> str:
        '''Dump a JSON representation of the hierarchy'''
        return json_serializer.dumps(self, indent=4)

    _def_level_fmts: Dict[Optional[HierarchyLevel], Tuple[str, ...]] = \
        {None : ('{n_patients} patients',),
         HierarchyLevel.PATIENT : ('ID: {PatientID}',
                                   'Name: {PatientName}',
                                   '{n_children} studies'),
         HierarchyLevel.STUDY : ('ID: {StudyID}',
                                 'Date: {StudyDate}',
                                 '{n_children} series'),
         HierarchyLevel.SERIES : ('{SeriesNumber}',
                                  '{SeriesDescription}',
                                  '{Modality}',
                                  '{n_children} instances'),
         HierarchyLevel.IMAGE : ('{InstanceNumber}',
                                 '{SOPInstanceUID}'),
        }
    '''Default format for each line item in output from `to_tree`'''

    def to_line(self,
                node: Optional[DicomEntity] = None,
                level_fmts: Optional[Dict[Optional[HierarchyLevel], Tuple[str, ...]]] = None,
                sep: str = ' | ',
                missing: str = 'NA') -> str:
        '''Get line of text describing a single node'''
        if level_fmts is None:
            level_fmts = self._def_level_fmts
        info: Dict[str, Any] = defaultdict(lambda: missing)
        if node is None:
            info['n_patients'] = self.n_patients()
            fmt_toks = level_fmts[None]
        else:
            info.update(node.meta_data)
            if isinstance(node, _ParentNode):
                info['n_children'] = len(node._children)
            fmt_toks = level_fmts[node.level]
        return sep.join(fmt_toks).format_map(info)

    def to_tree(self,
                max_level: HierarchyLevel = HierarchyLevel.IMAGE,
                level_fmts: Optional[Dict[Optional[HierarchyLevel], Tuple[str, ...]]] = None,
                sep: str = ' | ',
                missing: str = 'NA') -> str:
        '''Produce a formatted text tree representation'''
        def formatter(node: Optional[DicomEntity]) -> str:
            return self.to_line(node, level_fmts, sep, missing)

        def child_getter(node: Optional[DicomEntity]) -> List[DicomEntity]:
            if node is None:
                return self.values()
            if node.level == max_level or not isinstance(node, _ParentNode):
                return []
            return [v for _, v in node._child_items()]

        return format_tree(None, formatter, child_getter)

    def __str__(self) -> str:
        return 'DicomHierarchy: %d patients, %d studies, %d series, %d instances' % (
            self.n_patients(), self.n_studies(), self.n_series(), self.n_instances())
