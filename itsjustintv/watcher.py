"""Watches the configuration file and applies changes after a short debounce."""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from itsjustintv.config import Config, ConfigError, load_config

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.5

_RELEVANT_EVENTS = frozenset({"created", "modified", "moved", "deleted"})


class _Handler(FileSystemEventHandler):
    def __init__(self, on_event: Callable[[FileSystemEvent], None]) -> None:
        super().__init__()
        self._on_event = on_event

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._on_event(event)


class ConfigWatcher:
    """Reloads the configuration whenever its file or directory changes."""

    def __init__(self, config_path: str, reload_func: Callable[[Config], None]) -> None:
        self.config_path = os.fspath(config_path) if config_path else ""
        self.reload_func = reload_func
        self.debounce_time = DEFAULT_DEBOUNCE
        self._config: Config | None = None
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._observer: Observer | None = None
        self._stopped = threading.Event()

    @property
    def config_dir(self) -> str:
        """Directory part of the config path, or '.' when there is none."""
        path = self.config_path
        cut = max(path.rfind("/"), path.rfind("\\"))
        if cut >= 0:
            return path[:cut]
        return "."

    @property
    def config(self) -> Config | None:
        """The most recently reloaded configuration, or None before any reload."""
        with self._lock:
            return self._config

    def start(self) -> None:
        """Begin watching; does nothing when no config path is set."""
        if not self.config_path:
            logger.debug("No config path provided, skipping file watcher")
            return
        if not os.path.exists(self.config_path):
            raise ConfigError(
                f"failed to watch config file: {self.config_path} does not exist"
            )

        watch_dir = self.config_dir or os.sep
        observer = Observer()
        try:
            observer.schedule(_Handler(self._on_event), watch_dir, recursive=False)
            observer.start()
        except OSError as err:
            raise ConfigError(f"failed to watch config file: {err}") from err
        self._stopped.clear()
        self._observer = observer
        logger.info("Configuration file watcher started path=%s", self.config_path)

    def stop(self) -> None:
        """Stop watching and cancel any pending reload."""
        self._stopped.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def reload_config(self) -> bool:
        """Load, validate and apply the configuration; return True on success."""
        logger.info("Configuration file changed, reloading...")
        try:
            new_config = load_config(self.config_path)
            new_config.validate()
        except ConfigError as err:
            logger.error("Failed to load new configuration: %s", err)
            return False

        try:
            self.reload_func(new_config)
        except Exception as err:
            logger.error("Failed to apply new configuration: %s", err)
            return False

        with self._lock:
            self._config = new_config
        logger.info("Configuration reloaded successfully")
        return True

    def _targets(self) -> set[str]:
        return {
            os.path.abspath(self.config_path),
            os.path.abspath(self.config_dir or os.sep),
        }

    def _on_event(self, event: FileSystemEvent) -> None:
        if self._stopped.is_set() or event.event_type not in _RELEVANT_EVENTS:
            return
        paths = {os.path.abspath(os.fsdecode(event.src_path))}
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.add(os.path.abspath(os.fsdecode(dest)))
        if paths.isdisjoint(self._targets()):
            return

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_time, self._debounced_reload)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _debounced_reload(self) -> None:
        with self._lock:
            self._timer = None
        if not self._stopped.is_set():
            self.reload_config()