#!/usr/bin/env python3
"""Publishing and reloading of the active item filter.

The manager holds one published :class:`ItemFilter`. A reload compiles a
complete new filter first and then replaces the reference in a single
assignment, so callers evaluating items always see either the old or the
new filter, never one being built.

Example:
    >>> manager = FilterManager("pickit.ifl")
    >>> manager.reload()
    >>> manager.watch(interval=1.0)
    >>> manager.matches(item)
"""

import threading
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from itemfilter.core.config import ConfigManager
from itemfilter.core.constants import DEFAULT_IDENTITY_FIELD, DEFAULT_WATCH_INTERVAL, WATCH_JOIN_TIMEOUT
from itemfilter.core.logging import Logger, get_logger
from itemfilter.rules.engine import ItemFilter, MatchResult
from itemfilter.rules.expression import ExpressionCompiler

FilterListener = Callable[[ItemFilter], None]


class FilterManager:
    """Owner of the published filter.

    Features:
    - Build-then-swap reload
    - Reload listeners
    - Optional polling of the filter file for changes
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        compiler: Optional[ExpressionCompiler] = None,
        logger: Optional[Logger] = None,
        keep_comment_only: bool = False,
        identity_field: str = DEFAULT_IDENTITY_FIELD,
    ):
        """Initialize manager.

        Args:
            path: Filter file; nothing is loaded until :meth:`reload`
            compiler: Expression compiler shared by every reload
            logger: Logger for diagnostics
            keep_comment_only: Report all-comment blocks as parse failures
            identity_field: Item attribute named in match diagnostics
        """
        self._path = str(path) if path is not None else None
        self._compiler = compiler or ExpressionCompiler()
        self._logger = logger or get_logger()
        self._keep_comment_only = keep_comment_only
        self._identity_field = identity_field

        self._current = ItemFilter(logger=self._logger, identity_field=identity_field)
        self._reload_lock = threading.Lock()
        self._listeners: List[FilterListener] = []
        self._loaded_mtime: Optional[float] = None

        self._watch_thread: Optional[threading.Thread] = None
        self._stop_watching = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        compiler: Optional[ExpressionCompiler] = None,
        logger: Optional[Logger] = None,
    ) -> "FilterManager":
        """Create a manager from the ``itemfilter.filter`` settings.

        Loads the configured file, if any, and starts watching it when
        ``itemfilter.filter.watch`` is set.

        Raises:
            OSError: If the configured file cannot be read
        """
        manager = cls(
            config.get("itemfilter.filter.path"),
            compiler=compiler,
            logger=logger,
            keep_comment_only=bool(config.get("itemfilter.filter.keep_comment_only_blocks", False)),
            identity_field=config.get("itemfilter.matcher.identity_field", DEFAULT_IDENTITY_FIELD),
        )

        if manager.path is not None:
            manager.reload()
            if config.get("itemfilter.filter.watch", False):
                manager.watch(float(config.get("itemfilter.filter.watch_interval", DEFAULT_WATCH_INTERVAL)))

        return manager

    @property
    def path(self) -> Optional[str]:
        return self._path

    @property
    def current(self) -> ItemFilter:
        """The published filter (empty before the first load)."""
        return self._current

    def reload(self) -> ItemFilter:
        """Compile the filter file and publish the result.

        Returns:
            The newly published filter

        Raises:
            ValueError: If no path is set
            OSError: If the file cannot be read; the published filter is kept
        """
        if self._path is None:
            raise ValueError("No filter file configured")

        with self._reload_lock:
            mtime = Path(self._path).stat().st_mtime
            item_filter = ItemFilter.load(
                self._path,
                compiler=self._compiler,
                logger=self._logger,
                keep_comment_only=self._keep_comment_only,
                identity_field=self._identity_field,
            )
            self._current = item_filter
            self._loaded_mtime = mtime

        self._logger.debug("Published filter", file=self._path, rules=len(item_filter))
        self._notify_listeners(item_filter)
        return item_filter

    def set_path(self, path: Union[str, Path]) -> ItemFilter:
        """Switch to another filter file and load it."""
        self._path = str(path)
        return self.reload()

    def evaluate(self, item: Any) -> MatchResult:
        """Evaluate an item against the published filter."""
        return self._current.evaluate(item)

    def matches(self, item: Any) -> bool:
        """Check an item against the published filter."""
        return self._current.matches(item)

    def add_listener(self, callback: FilterListener) -> None:
        """Register a function called with each newly published filter."""
        self._listeners.append(callback)

    def remove_listener(self, callback: FilterListener) -> None:
        """Unregister a reload listener."""
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self, item_filter: ItemFilter) -> None:
        for listener in list(self._listeners):
            try:
                listener(item_filter)
            except Exception as e:
                self._logger.exception("Filter listener failed", e)

    def has_changed(self) -> bool:
        """True when the file's modification time differs from the loaded one."""
        if self._path is None:
            return False
        try:
            mtime = Path(self._path).stat().st_mtime
        except OSError:
            return False
        return mtime != self._loaded_mtime

    def watch(self, interval: float = DEFAULT_WATCH_INTERVAL) -> None:
        """Start polling the filter file and reloading it on change.

        Args:
            interval: Check interval in seconds
        """
        if self._watch_thread is not None and self._watch_thread.is_alive():
            return

        self._stop_watching.clear()
        self._watch_thread = threading.Thread(
            target=self._watch_loop,
            args=(interval,),
            name="itemfilter-watch",
            daemon=True,
        )
        self._watch_thread.start()

    def _watch_loop(self, interval: float) -> None:
        while not self._stop_watching.wait(interval):
            if not self.has_changed():
                continue
            try:
                self.reload()
            except OSError as e:
                self._logger.error(
                    "Failed to reload filter, keeping previous rules",
                    file=self._path,
                    error=str(e),
                )
            except Exception as e:
                # Polling continues after any failed reload
                self._logger.exception("Unexpected error reloading filter, keeping previous rules", e, file=self._path)

    def stop_watching(self) -> None:
        """Stop file watching."""
        self._stop_watching.set()
        if self._watch_thread is not None:
            self._watch_thread.join(timeout=WATCH_JOIN_TIMEOUT)
            self._watch_thread = None

    @property
    def is_watching(self) -> bool:
        return self._watch_thread is not None and self._watch_thread.is_alive()
