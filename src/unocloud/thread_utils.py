# -*- coding: utf-8 -*-
"""
Thread-safe utilities for parallel processing.

This module provides a thread-safe print() so that upload workers can log
without interleaving their output.
"""

import builtins
import os
import threading

_console_lock = threading.Lock()
_original_print = builtins.print


def thread_safe_print(*args, **kwargs):
    """
    Thread-safe replacement for print() that ensures sequential output.
    When DEBUG=true, includes thread identifier to track which thread produced each log line.

    Thread identifiers (DEBUG mode only):
        [Main] - Main thread (orchestration, statistics, summaries)
        [Upload-N] - Upload worker threads

    Args:
        *args: Same as print()
        **kwargs: Same as print()
    """
    show_thread_id = os.environ.get('DEBUG', '').lower() == 'true'

    with _console_lock:
        if show_thread_id and args:
            thread_name = threading.current_thread().name
            if thread_name == "MainThread":
                prefix = "[Main]"
            elif thread_name.startswith("Upload-"):
                prefix = f"[{thread_name}]"
            else:
                prefix = f"[{thread_name[:10]}]"
            _original_print(prefix, *args, **kwargs)
        else:
            _original_print(*args, **kwargs)


def enable_thread_safe_print():
    """
    Replace built-in print() with the thread-safe version.
    Called by each upload worker when it starts.
    """
    builtins.print = thread_safe_print


def restore_original_print():
    """Restore original print() function"""
    builtins.print = _original_print

