"""Sinks for line-oriented diagnostic text output.

Samplers report their tuned state (for example the nominal step size and the
metric elements) as human-readable records, one record per call of a writer.
Any callable accepting a single string argument can be used as a writer; the
classes here cover the common cases of writing to a text stream, collecting
records in memory and discarding them.
"""

from abc import ABC, abstractmethod
import sys


class Writer(ABC):
    """Abstract base class for writers.

    Calling a writer instance with a string writes one record.
    """

    @abstractmethod
    def __call__(self, message=''):
        """Write a single record.

        Args:
            message (str): Record to write. Defaults to an empty record.
        """


class NullWriter(Writer):
    """Writer which discards all records."""

    def __call__(self, message=''):
        pass


class ListWriter(Writer):
    """Writer which accumulates records in a list."""

    def __init__(self):
        self.lines = []

    def __call__(self, message=''):
        self.lines.append(str(message))

    def __len__(self):
        return len(self.lines)

    def __iter__(self):
        return iter(self.lines)


class StreamWriter(Writer):
    """Writer which outputs each record as a line in a text stream."""

    def __init__(self, stream=None, comment_prefix=''):
        """
        Args:
            stream (None or TextIO): Text stream to write records to. Defaults
                to `sys.stdout` if `None`.
            comment_prefix (str): String to prefix each record with, for
                example `'# '` to mark records as comments when interleaved
                with CSV formatted draws.
        """
        self.stream = sys.stdout if stream is None else stream
        self.comment_prefix = comment_prefix

    def __call__(self, message=''):
        self.stream.write(f'{self.comment_prefix}{message}\n')
