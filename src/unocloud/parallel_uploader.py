# -*- coding: utf-8 -*-
"""
Parallel file upload orchestration for UnoCloud sync.

Runs one unit of work per file on a bounded pool of worker threads, retrying
transient failures with exponential backoff and isolating each file's failure
from the rest of the batch.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from itertools import count

from .config import MAX_RETRY_DELAY_MS
from .exceptions import AuthError, GraphAPIError, UploadError
from .thread_utils import enable_thread_safe_print, restore_original_print
from .utils import is_debug_enabled


def is_retryable(error):
    """
    Decide whether a failed upload is worth another attempt.

    Transfer failures and Graph errors are retried; authentication failures
    and conflicts (the remote item exists and the policy forbids replacing it)
    are not.
    """
    if isinstance(error, AuthError):
        return False
    if isinstance(error, GraphAPIError):
        return not error.is_conflict
    return isinstance(error, UploadError)


class UploadOutcome:
    """Result of processing one item."""

    def __init__(self, item, result=None, error=None, retry_count=0, cancelled=False):
        self.item = item
        self.result = result
        self.error = error
        self.retry_count = retry_count
        self.cancelled = cancelled

    @property
    def succeeded(self):
        return self.error is None and not self.cancelled

    def __repr__(self):
        state = 'cancelled' if self.cancelled else ('ok' if self.error is None else 'failed')
        return f"<UploadOutcome({self.item!r}, {state}, retries={self.retry_count})>"


class ParallelUploader:
    """
    Bounded worker pool for uploads.

    With max_workers == 1 items are processed in the calling thread, strictly
    in the order given. With more workers, completion order is unspecified.
    """

    def __init__(self, max_workers=3, retry_attempts=3, retry_delay_ms=1000,
                 retry_predicate=is_retryable, abort_on=(AuthError,), sleep=time.sleep):
        """
        Args:
            max_workers (int): Maximum concurrent uploads (at least 1)
            retry_attempts (int): Extra attempts after the first failure
            retry_delay_ms (int): Delay before the first retry; doubles per
                retry, capped at MAX_RETRY_DELAY_MS
            retry_predicate (callable): Decides whether an error is retried
            abort_on (tuple): Error types that stop the whole batch
            sleep (callable): Sleep function (seconds)
        """
        self.max_workers = max(1, int(max_workers))
        self.retry_attempts = max(0, int(retry_attempts))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self.retry_predicate = retry_predicate
        self.abort_on = abort_on
        self._sleep = sleep
        self._worker_ids = count(1)
        self._stop = threading.Event()

    def retry_delay(self, retry_number):
        """Seconds to wait before the given retry (1-based)."""
        delay_ms = self.retry_delay_ms * (2 ** (retry_number - 1))
        return min(delay_ms, MAX_RETRY_DELAY_MS) / 1000.0

    def _init_worker(self):
        # Name this thread for debug logging
        threading.current_thread().name = f"Upload-{next(self._worker_ids)}"
        enable_thread_safe_print()

    def _should_stop(self, cancel_event):
        return self._stop.is_set() or (cancel_event is not None and cancel_event.is_set())

    def _process(self, item, work_fn, cancel_event):
        if self._should_stop(cancel_event):
            return UploadOutcome(item, cancelled=True)

        retries = 0
        while True:
            try:
                return UploadOutcome(item, result=work_fn(item), retry_count=retries)
            except Exception as e:
                if isinstance(e, self.abort_on):
                    self._stop.set()
                    return UploadOutcome(item, error=e, retry_count=retries)

                if (retries >= self.retry_attempts or not self.retry_predicate(e)
                        or self._should_stop(cancel_event)):
                    return UploadOutcome(item, error=e, retry_count=retries)

                retries += 1
                delay = self.retry_delay(retries)
                if is_debug_enabled():
                    print(f"[!] Attempt failed for {item}: {str(e)[:200]}. "
                          f"Retrying in {delay:.1f}s ({retries}/{self.retry_attempts})")
                self._sleep(delay)

    def run(self, items, work_fn, cancel_event=None, on_done=None):
        """
        Process every item with work_fn.

        Args:
            items (list): Work items, in scan order
            work_fn (callable): work_fn(item) -> result; raises on failure
            cancel_event (threading.Event, optional): When set, items not yet
                started are skipped and reported as cancelled
            on_done (callable, optional): on_done(outcome), called in the calling
                thread as each item finishes

        Returns:
            list: UploadOutcome per item, in the order of items
        """
        self._stop.clear()
        items = list(items)
        outcomes = [None] * len(items)

        def finish(index, outcome):
            outcomes[index] = outcome
            if on_done:
                on_done(outcome)

        if self.max_workers == 1 or len(items) <= 1:
            for index, item in enumerate(items):
                finish(index, self._process(item, work_fn, cancel_event))
            return outcomes

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, initializer=self._init_worker) as executor:
                futures = {
                    executor.submit(self._process, item, work_fn, cancel_event): index
                    for index, item in enumerate(items)
                }
                for future in as_completed(futures):
                    index = futures[future]
                    finish(index, future.result())
        finally:
            restore_original_print()

        return outcomes
