"""Parse a batch of DICOM files into a `DicomHierarchy`

Every file gets its own task, and the blocking work (reading, decoding, and
merging into the hierarchy) runs in a thread pool. A file that fails at any
stage is recorded along with its error, and never stops the other files from
being parsed. Whether any failure is fatal is only decided once the whole
batch is finished.
"""
from __future__ import annotations
import os, asyncio, logging, threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from glob import iglob
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from attrs import frozen, field

from .hierarchy import DicomHierarchy, KeyPath, MissingKeyPolicy
from .metadata import BufferType, decode_dataset, read_tags
from .report import CountableReport, ProgressHookBase
from .util import PathInputType, SourceType, source_name


log = logging.getLogger(__name__)


class FileState(Enum):
    """Processing stages each input file moves through"""

    PENDING = "pending"
    DECODING = "decoding"
    EXTRACTING_TAGS = "extracting_tags"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@frozen
class FailedFile:
    """An input that couldn't be parsed, along with the reason"""

    file: SourceType = field(repr=source_name)

    error: Exception


@frozen
class ParseResult:
    """Result from parsing a batch of files"""

    patients: DicomHierarchy

    failures: List[FailedFile] = field(factory=list)


class ParseDicomError(Exception):
    """Raised when some files in a batch couldn't be parsed

    The batch still ran to completion, the individual errors are available
    in the `failures` attribute.
    """

    def __init__(self, failures: List[FailedFile]):
        self.failures = failures

    def __str__(self) -> str:
        return (
            f"Failed at parsing {len(self.failures)} DICOM file(s). Find the "
            'list of files and associated errors in the "failures" attribute '
            "of the raised error, or ignore the errors by calling "
            "parse_dicom_files(files, ignore_failed_files=True)."
        )


class ParseReport(CountableReport):
    """Track the state of every file in a parse batch"""

    def __init__(
        self,
        description: Optional[str] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        prog_hook: Optional[ProgressHookBase[Any]] = None,
        n_expected: Optional[int] = None,
    ):
        self.failures: List[FailedFile] = []
        self.successful: List[SourceType] = []
        self._states: Dict[int, FileState] = {}
        self._start_times: Dict[int, datetime] = {}
        self._durations: Dict[int, timedelta] = {}
        self._state_lock = threading.Lock()
        super().__init__(description, meta_data, prog_hook, n_expected)

    @property
    def n_success(self) -> int:
        return len(self.successful)

    @property
    def n_errors(self) -> int:
        return len(self.failures)

    @property
    def states(self) -> Dict[int, FileState]:
        """Current state of each file, keyed on its index in the batch"""
        with self._state_lock:
            return dict(self._states)

    @property
    def durations(self) -> Dict[int, timedelta]:
        """Processing time for each file that reached a terminal state"""
        with self._state_lock:
            return dict(self._durations)

    def set_state(self, idx: int, state: FileState) -> None:
        """Move a file to a new state, called from worker threads"""
        now = datetime.now()
        with self._state_lock:
            prev = self._states.get(idx, FileState.PENDING)
            if prev in (FileState.DONE, FileState.FAILED):
                raise ValueError(f"File {idx} already reached state {prev.name}")
            self._states[idx] = state
            if state == FileState.DECODING:
                self._start_times[idx] = now
            elif state in (FileState.DONE, FileState.FAILED):
                self._durations[idx] = now - self._start_times.get(idx, now)

    def add_pending(self, idx: int) -> None:
        with self._state_lock:
            self._states[idx] = FileState.PENDING

    def add_success(self, idx: int, src: SourceType) -> None:
        self.set_state(idx, FileState.DONE)
        self.count_input()
        self.successful.append(src)

    def add_failure(self, idx: int, src: SourceType, error: Exception) -> None:
        self.set_state(idx, FileState.FAILED)
        self.count_input()
        self.failures.append(FailedFile(src, error))

    def log_issues(self) -> None:
        """Log a summary of error/warning statuses"""
        if self.n_errors != 0:
            log.error("Failed to parse %d DICOM file(s)", self.n_errors)
            for failure in self.failures:
                log.error("  %s: %s", source_name(failure.file), failure.error)

    def check_errors(self) -> None:
        """Raise an exception if any errors occured"""
        if self.n_errors != 0:
            raise ParseDicomError(list(self.failures))

    def _set_done(self, val: bool) -> None:
        super()._set_done(val)
        log.info("Parsed %d DICOM files in %s", self.n_input, self.duration)


def _read_bytes(path: PathInputType) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def read_file(
    src: SourceType, executor: Optional[ThreadPoolExecutor] = None
) -> BufferType:
    """Get the raw bytes for an input, reading from disk if it is a path"""
    if isinstance(src, (bytes, bytearray, memoryview)):
        return src
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, _read_bytes, src)


def _decode_and_merge(
    idx: int,
    src: SourceType,
    data: BufferType,
    hierarchy: DicomHierarchy,
    report: ParseReport,
) -> KeyPath:
    ds = decode_dataset(data)
    report.set_state(idx, FileState.EXTRACTING_TAGS)
    raw = read_tags(ds, data)
    report.set_state(idx, FileState.MERGING)
    return hierarchy.add(raw, src)


async def parse_dicom_files(
    files: Iterable[SourceType],
    ignore_failed_files: bool = False,
    report: Optional[ParseReport] = None,
    max_threads: Optional[int] = None,
    missing_key: MissingKeyPolicy = MissingKeyPolicy.UNDEFINED,
) -> ParseResult:
    """Parse a batch of DICOM files concurrently

    Parameters
    ----------
    files
        Paths to the files, or their raw bytes

    ignore_failed_files
        Return the failures with the result, instead of raising an error

    report
        Report to track the progress of the batch. If provided the caller is
        responsible for logging its issues.

    max_threads
        Max number of worker threads, uses the `ThreadPoolExecutor` default
        if None

    missing_key
        What to do with files missing one of the primary tags

    Raises
    ------
    ParseDicomError
        If any files failed and `ignore_failed_files` is False
    """
    files = list(files)
    if report is None:
        extern_report = False
        report = ParseReport()
    else:
        extern_report = True
    report._meta_data["n_files"] = len(files)
    report.n_expected = len(files)
    for idx in range(len(files)):
        report.add_pending(idx)
    hierarchy = DicomHierarchy(missing_key)
    loop = asyncio.get_running_loop()

    with ThreadPoolExecutor(max_workers=max_threads) as executor:

        async def parse_one(idx: int, src: SourceType) -> None:
            try:
                report.set_state(idx, FileState.DECODING)
                data = await read_file(src, executor)
                await loop.run_in_executor(
                    executor,
                    partial(_decode_and_merge, idx, src, data, hierarchy, report),
                )
            except Exception as e:
                log.info("Unable to parse %s: %s", source_name(src), e)
                report.add_failure(idx, src, e)
            else:
                report.add_success(idx, src)

        await asyncio.gather(*(parse_one(idx, src) for idx, src in enumerate(files)))

    report.done = True
    if not extern_report:
        report.log_issues()
    if not ignore_failed_files:
        report.check_errors()
    return ParseResult(hierarchy, list(report.failures))


def find_dicom_files(
    paths: Iterable[PathInputType], recurse: bool = True, file_ext: str = "dcm"
) -> List[str]:
    """Expand any directories in `paths` into the files they contain

    Paths to files are passed through as is, regardless of their extension.
    Files found in a directory are sorted to keep the output stable.
    """
    res: List[str] = []
    for path in paths:
        path = Path(path)
        if path.is_file():
            res.append(str(path))
            continue
        if not path.is_dir():
            raise FileNotFoundError(f"No such file or directory: {path}")
        glob_comps = [str(path)]
        if recurse:
            glob_comps.append("**")
        if file_ext:
            glob_comps.append("*.%s" % file_ext)
        else:
            glob_comps.append("*")
        glob_exp = os.path.join(*glob_comps)
        found = [p for p in iglob(glob_exp, recursive=recurse) if os.path.isfile(p)]
        log.debug("Found %d files under %s", len(found), path)
        res.extend(sorted(found))
    return res
