"""Bridge interpreter exit and POSIX signals to lifecycle notifications."""

from __future__ import annotations

import atexit
import logging
import signal
import threading
from collections.abc import Sequence
from types import FrameType
from typing import Any

from lists_store.constants import APP_DID_ENTER_BACKGROUND, APP_WILL_TERMINATE
from lists_store.lifecycle.notifications import NotificationCenter, default_notification_center

logger = logging.getLogger(__name__)

SignalHandler = Any


def _default_terminate_signals() -> tuple[signal.Signals, ...]:
    return (signal.SIGTERM,)


class ProcessHooks:
    """Installed atexit and signal hooks; ``uninstall`` restores the previous handlers.

    ``app-will-terminate`` is posted at most once per installation, whichever of
    interpreter exit or a termination signal comes first.
    """

    def __init__(
        self,
        center: NotificationCenter,
        *,
        terminate_signals: Sequence[signal.Signals],
        background_signals: Sequence[signal.Signals],
        register_atexit: bool,
    ) -> None:
        overlap = set(terminate_signals) & set(background_signals)
        if overlap:
            names = sorted(sig.name for sig in overlap)
            raise ValueError(f"signals cannot be both terminate and background signals: {names}")
        self._center = center
        self._terminate_signals = tuple(terminate_signals)
        self._background_signals = tuple(background_signals)
        self._register_atexit = register_atexit
        self._previous: dict[signal.Signals, SignalHandler] = {}
        self._lock = threading.Lock()
        self._terminated = False
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def center(self) -> NotificationCenter:
        return self._center

    def install(self) -> None:
        if self._installed:
            return
        # signal.signal raises ValueError outside the main thread; nothing is installed then.
        for sig in self._terminate_signals:
            self._previous[sig] = signal.signal(sig, self._on_terminate_signal)
        for sig in self._background_signals:
            self._previous[sig] = signal.signal(sig, self._on_background_signal)
        if self._register_atexit:
            atexit.register(self._on_exit)
        self._installed = True
        logger.debug(
            "installed process lifecycle hooks",
            extra={
                "terminate_signals": [sig.name for sig in self._terminate_signals],
                "background_signals": [sig.name for sig in self._background_signals],
            },
        )

    def uninstall(self) -> None:
        if not self._installed:
            return
        for sig, previous in self._previous.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()
        if self._register_atexit:
            atexit.unregister(self._on_exit)
        self._installed = False

    def post_will_terminate(self, *, reason: str) -> bool:
        """Post ``app-will-terminate`` unless this installation already did."""

        with self._lock:
            if self._terminated:
                return False
            self._terminated = True
        self._center.post(APP_WILL_TERMINATE, {"reason": reason})
        return True

    def _on_exit(self) -> None:
        self.post_will_terminate(reason="exit")

    def _on_terminate_signal(self, signum: int, frame: FrameType | None) -> None:
        sig = signal.Signals(signum)
        logger.info("received termination signal", extra={"signal": sig.name})
        self.post_will_terminate(reason=sig.name)

        previous = self._previous.get(sig)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_IGN:
            return
        else:
            raise SystemExit(128 + signum)

    def _on_background_signal(self, signum: int, frame: FrameType | None) -> None:
        del frame
        sig = signal.Signals(signum)
        self._center.post(APP_DID_ENTER_BACKGROUND, {"reason": sig.name})


def install_process_hooks(
    center: NotificationCenter | None = None,
    *,
    terminate_signals: Sequence[signal.Signals] | None = None,
    background_signals: Sequence[signal.Signals] = (),
    register_atexit: bool = True,
) -> ProcessHooks:
    """Post lifecycle notifications on interpreter exit and on the given signals.

    Must be called from the main thread when any signals are given.
    """

    hooks = ProcessHooks(
        center if center is not None else default_notification_center(),
        terminate_signals=(
            _default_terminate_signals() if terminate_signals is None else terminate_signals
        ),
        background_signals=background_signals,
        register_atexit=register_atexit,
    )
    hooks.install()
    return hooks


def signal_from_name(name: str) -> signal.Signals:
    """Resolve ``"SIGTERM"`` / ``"TERM"`` style names; raises ``ValueError``."""

    normalized = name.strip().upper()
    if not normalized.startswith("SIG"):
        normalized = f"SIG{normalized}"
    try:
        return signal.Signals[normalized]
    except KeyError as exc:
        raise ValueError(f"unknown signal {name!r}") from exc


__all__ = ["ProcessHooks", "install_process_hooks", "signal_from_name"]
