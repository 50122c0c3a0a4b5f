"""
Yes/no confirmation before a change is applied
"""

import sys
import threading


class Confirmer:
    """Decides whether a classified change may be applied"""

    def confirm(self, message):
        raise NotImplementedError


class AutoConfirm(Confirmer):
    """Non-interactive runs: every change is applied"""

    def confirm(self, message):
        return True


class ConsoleConfirm(Confirmer):
    """Asks on the console, one prompt at a time.

    Workers call confirm() concurrently; the lock keeps each prompt and its
    answer together on the terminal.
    """

    def __init__(self, input_stream=None, output_stream=None):
        self.input_stream = input_stream or sys.stdin
        self.output_stream = output_stream or sys.stdout
        self._lock = threading.Lock()

    def confirm(self, message):
        with self._lock:
            self.output_stream.write(f"{message} ")
            self.output_stream.flush()
            answer = self.input_stream.readline()
        return answer.strip().lower() in ('y', 'yes')
