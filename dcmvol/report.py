"""Base classes for reporting on batch operations

Parsing a batch of files is made up of many sub-operations, and it is common
for some of them to fail without that being fatal for the whole batch. The
report classes capture that kind of information, and can provide real-time
insight into an ongoing async operation through a progress hook.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar

import rich.progress


log = logging.getLogger(__name__)


@dataclass
class ProgressTaskBase:
    description: str

    total: Optional[int]

    start_time: datetime

    min_seconds: float

    show_indeterminate: bool

    _visible: bool = field(default=False, init=False, repr=False)


T = TypeVar("T", bound=ProgressTaskBase)


class ProgressHookBase(Generic[T]):
    """Base class for hooking in to progress updates from a report"""

    def_min_seconds: float = 1.0

    def_show_indeterminate: bool = False

    def create_task(
        self, description: str, total: Optional[int] = None, **kwargs: Any
    ) -> T:
        raise NotImplementedError

    def set_total(self, task: T, total: int) -> None:
        raise NotImplementedError

    def advance(self, task: T, amount: float = 1.0) -> None:
        raise NotImplementedError

    def end(self, task: T) -> None:
        raise NotImplementedError


@dataclass
class RichProgressTask(ProgressTaskBase):

    _task: Optional[rich.progress.TaskID] = field(default=None, init=False, repr=False)


class RichProgressHook(ProgressHookBase[RichProgressTask]):
    """Hook for console progress bar provided by `rich` package"""

    def __init__(self, progress: rich.progress.Progress):
        self._progress = progress

    def create_task(
        self, description: str, total: Optional[int] = None, **kwargs: Any
    ) -> RichProgressTask:
        kwargs.setdefault("min_seconds", self.def_min_seconds)
        kwargs.setdefault("show_indeterminate", self.def_show_indeterminate)
        return RichProgressTask(description, total, datetime.now(), **kwargs)

    def set_total(self, task: RichProgressTask, total: int) -> None:
        if total == task.total:
            return
        task.total = total
        self._update_task(task, total_dirty=True)

    def advance(self, task: RichProgressTask, amount: float = 1.0) -> None:
        self._update_task(task, advance=amount)

    def end(self, task: RichProgressTask) -> None:
        if task._task is not None:
            self._progress.update(task._task, visible=False)
            self._progress.stop_task(task._task)
            task._task = None

    def _update_task(
        self,
        task: RichProgressTask,
        advance: Optional[float] = None,
        total_dirty: bool = False,
    ) -> None:
        task_opts: Dict[str, Any] = {}
        if task.total is None:
            if not task.show_indeterminate:
                return
            task_opts["start"] = False
        elif total_dirty:
            task_opts["total"] = task.total
        if not task._visible:
            elapsed = (datetime.now() - task.start_time).total_seconds()
            if task.min_seconds <= 0.0 or elapsed > task.min_seconds:
                task._visible = True
                task_opts["visible"] = True
        if not task._visible and advance is None:
            return
        if task._task is None:
            task_opts["total"] = task.total
            task_opts["visible"] = task._visible
            task._task = self._progress.add_task(task.description, **task_opts)
            if advance is not None:
                self._progress.advance(task._task, advance)
        else:
            self._progress.update(task._task, advance=advance, **task_opts)


class BaseReport:
    """Abstract base class for all reports"""

    def __init__(
        self,
        description: Optional[str] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        prog_hook: Optional[ProgressHookBase[Any]] = None,
    ):
        self._description = description
        self._meta_data = {} if meta_data is None else meta_data
        self._prog_hook = prog_hook
        self._start_time = datetime.now()
        self._end_time: Optional[datetime] = None
        self._done = False

    @property
    def description(self) -> str:
        if self._description is None:
            self._description = self._auto_descr()
        return self._description

    @property
    def done(self) -> bool:
        return self._done

    @done.setter
    def done(self, val: bool) -> None:
        self._set_done(val)

    @property
    def prog_hook(self) -> Optional[ProgressHookBase[Any]]:
        return self._prog_hook

    @property
    def duration(self) -> Optional[Any]:
        """Time between creating the report and marking it done"""
        if self._end_time is None:
            return None
        return self._end_time - self._start_time

    @property
    def has_errors(self) -> bool:
        """True if any errors were reported"""
        raise NotImplementedError

    @property
    def has_warnings(self) -> bool:
        """True if any warnings were reported"""
        raise NotImplementedError

    def log_issues(self) -> None:
        """Log a summary of error/warning statuses"""
        raise NotImplementedError

    def check_errors(self) -> None:
        """Raise an exception if any errors occured"""
        raise NotImplementedError

    def __str__(self) -> str:
        lines = [f"{self.description}:"]
        for k, v in self._meta_data.items():
            lines.append(f"  * {k}: {v}")
        done_stat = "COMPLETED" if self._done else "PENDING"
        lines.append(f"  * status: {done_stat}")
        lines.append(f"  * start time: {self._start_time}")
        if self._end_time is not None:
            lines.append(f"  * end time: {self._end_time}")
            lines.append(f"  * duration: {self.duration}")
        if self.has_errors:
            lines.append("  * success: False (errors detected)")
        elif self.has_warnings:
            lines.append("  * success: False (warnings detected)")
        else:
            lines.append("  * success: True")
        return "\n".join(lines)

    def _auto_descr(self) -> str:
        res = self.__class__.__name__.lower()
        if res.endswith("report") and len(res) > len("report"):
            res = res[: -len("report")]
        return res

    def _set_done(self, val: bool) -> None:
        if not val:
            raise ValueError("Setting `done` to False is not allowed")
        if self._done:
            raise ValueError("Report was already marked done")
        self._done = True
        self._end_time = datetime.now()


class CountableReport(BaseReport):
    '''Abstract base class for reports with single "count"'''

    def __init__(
        self,
        description: Optional[str] = None,
        meta_data: Optional[Dict[str, Any]] = None,
        prog_hook: Optional[ProgressHookBase[Any]] = None,
        n_expected: Optional[int] = None,
    ):
        self._n_expected = n_expected
        self._n_input = 0
        self._task: Optional[ProgressTaskBase] = None
        super().__init__(description, meta_data, prog_hook)

    @property
    def n_expected(self) -> Optional[int]:
        """Number of expected inputs, or None if unknown"""
        return self._n_expected

    @n_expected.setter
    def n_expected(self, val: int) -> None:
        self._n_expected = val
        if self._prog_hook is not None:
            if self._task is None:
                self._init_task()
            self._prog_hook.set_total(self._task, val)

    @property
    def n_input(self) -> int:
        """Number of inputs seen so far"""
        return self._n_input

    def count_input(self) -> None:
        self._n_input += 1
        if self._prog_hook is not None:
            if self._task is None:
                self._init_task()
            self._prog_hook.advance(self._task)

    @property
    def n_success(self) -> int:
        """Number of successfully handled inputs"""
        raise NotImplementedError

    @property
    def n_errors(self) -> int:
        """Number of errors"""
        raise NotImplementedError

    @property
    def n_warnings(self) -> int:
        """Number of warnings"""
        return 0

    @property
    def has_errors(self) -> bool:
        return self.n_errors != 0

    @property
    def has_warnings(self) -> bool:
        return self.n_warnings != 0

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._description}, n_expected={self._n_expected}, n_input={self._n_input})"

    def __str__(self) -> str:
        lines = [super().__str__()]
        lines.append(f"  * n_success: {self.n_success}")
        if self.n_warnings > 0:
            lines.append(f"  * n_warnings: {self.n_warnings}")
        if self.n_errors > 0:
            lines.append(f"  * n_errors: {self.n_errors}")
        return "\n".join(lines)

    def _set_done(self, val: bool) -> None:
        super()._set_done(val)
        if self._prog_hook is not None and self._task is not None:
            self._prog_hook.end(self._task)

    def _init_task(self) -> None:
        assert self._prog_hook is not None
        self._task = self._prog_hook.create_task(
            self.description, total=self._n_expected
        )
