import sys
import signal
import logging
import threading
from typing import Callable, Dict

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = ('SIGINT', 'SIGTERM', 'SIGBREAK')  # SIGBREAK only exists on Windows
QUIT_KEYS = ('q', 'quit')


class InterruptHandler:
    """
    Turns termination signals and a typed 'q' into a stop request for one run.

    The first interrupt calls `on_interrupt(reason)`; the run then finishes its
    current iteration and flushes. A second signal raises KeyboardInterrupt so
    an impatient operator is not stuck behind a slow page; the caller's
    `finally` still performs the final flush.
    """
    def __init__(self, on_interrupt: Callable[[str], None], watch_keyboard: bool = True, stdin=None):
        self.on_interrupt = on_interrupt
        self.watch_keyboard = watch_keyboard
        self._stdin = stdin if stdin is not None else sys.stdin
        self._previous: Dict[int, object] = {}
        self._active = False
        self.triggered = 0

    def install(self):
        self._active = True
        if threading.current_thread() is threading.main_thread():
            for name in HANDLED_SIGNALS:
                signum = getattr(signal, name, None)
                if signum is None:
                    continue
                self._previous[signum] = signal.signal(signum, self._handle_signal)
        else:
            logger.debug("Not on the main thread; signal handlers left to the caller.")

        if self.watch_keyboard and self._stdin is not None and self._stdin.isatty():
            thread = threading.Thread(target=self._watch_keyboard, name='quit-key-listener', daemon=True)
            thread.start()
            logger.info("Type 'q' and Enter to stop and save progress.")

    def uninstall(self):
        self._active = False
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()

    def __enter__(self):
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.uninstall()
        return False

    def trigger(self, reason: str):
        if not self._active:
            return
        self.triggered += 1
        self.on_interrupt(reason)

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        if self.triggered:
            logger.warning(f"Received {name} again, aborting now.")
            raise KeyboardInterrupt(name)
        logger.warning(f"Interrupted by {name}! Saving fetched records...")
        self.trigger(name)

    def _watch_keyboard(self):
        for line in self._stdin:
            if not self._active:
                return
            if line.strip().lower() in QUIT_KEYS:
                logger.warning("Quit key pressed, saving progress...")
                self.trigger('quit key')
                return
