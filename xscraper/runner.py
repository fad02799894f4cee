import atexit
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from xscraper.engine import CollectionRun
from xscraper.interrupt import InterruptHandler

logger = logging.getLogger(__name__)

COMPLETED = 'completed'
STOPPED = 'stopped'
FAILED = 'failed'

EXIT_CODES = {
    COMPLETED: 0,
    STOPPED: 130,
    FAILED: 1,
}


@dataclass
class RunOutcome:
    status: str
    collected: int
    persisted: int
    added: int = 0
    exhausted_before_limit: bool = False
    max_records: Optional[int] = None
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict:
        return asdict(self)


def execute_run(
    run: CollectionRun,
    interrupt_handler: Optional[InterruptHandler] = None,
    on_finish: Optional[Callable[[RunOutcome], None]] = None,
) -> RunOutcome:
    """
    Runs the collection loop and guarantees the final flush on every way out:
    normal completion, stop request, unhandled error, or interpreter exit.
    """
    if interrupt_handler is not None:
        interrupt_handler.install()
        atexit.register(run.finalize)

    status = FAILED
    error = None
    exhausted_before_limit = False
    try:
        result = run.collect()
        status = STOPPED if result.stopped else COMPLETED
        exhausted_before_limit = result.exhausted_before_limit
        if exhausted_before_limit:
            logger.warning(f"Reached end of feed after collecting {len(result.records)}/{result.max_records} records.")
    except KeyboardInterrupt:
        logger.warning("Aborted before the current iteration finished.")
        status = STOPPED
    except Exception as e:
        logger.exception(f"Error in scraper: {e}")
        error = f"{type(e).__name__}: {e}"
    finally:
        final = run.finalize()
        if interrupt_handler is not None:
            interrupt_handler.uninstall()
            atexit.unregister(run.finalize)

    if final is None and run.store is not None:
        status = FAILED
        flush_error = f"final flush failed: {run.flush_error}"
        error = f"{error}; {flush_error}" if error else flush_error

    outcome = RunOutcome(
        status=status,
        collected=len(run.records()),
        persisted=run.persisted,
        added=run.added_total,
        exhausted_before_limit=exhausted_before_limit,
        max_records=run.config.max_records,
        error=error,
    )
    logger.info(f"Run {outcome.status}: {outcome.collected} collected, {outcome.persisted} records persisted")
    if on_finish:
        on_finish(outcome)
    return outcome
