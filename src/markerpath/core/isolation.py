"""Isolation levels for the detection worker.

Example:
    >>> from markerpath.core import IsolationLevel
    >>> IsolationLevel.from_string("process")
    <IsolationLevel.PROCESS: 2>
"""

from enum import IntEnum


class IsolationLevel(IntEnum):
    """Where the detection worker runs.

    Higher levels provide more isolation but cost more per frame.

    Levels:
        THREAD: Same process, worker threads. Bitmaps move by reference.
        PROCESS: Same venv, subprocess over ZeroMQ.
        VENV: Different venv, subprocess over ZeroMQ. Lets the engine
            carry dependencies that conflict with the host's.
    """
    THREAD = 1      # Same process, different thread
    PROCESS = 2     # Same venv, different process
    VENV = 3        # Different venv, different process

    @classmethod
    def from_string(cls, s: str) -> "IsolationLevel":
        """Parse isolation level from string.

        Args:
            s: String like "thread", "process", "venv"

        Returns:
            Corresponding IsolationLevel.

        Raises:
            ValueError: If string is not a valid level name.
        """
        mapping = {
            "thread": cls.THREAD,
            "process": cls.PROCESS,
            "venv": cls.VENV,
        }
        s_lower = s.lower()
        if s_lower not in mapping:
            raise ValueError(
                f"Unknown isolation level: {s}. "
                f"Valid levels: {', '.join(mapping.keys())}"
            )
        return mapping[s_lower]


__all__ = ["IsolationLevel"]
