"""SwipeQ - turn right-swipes into queued job applications"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports so `import swipeq` does not pull in httpx or sqlite setup
def __getattr__(name: str):
    if name == "SwipeSession":
        from swipeq.session import SwipeSession

        return SwipeSession

    if name in ("SwipeEvent", "SwipeDirection", "ResumeSettings", "FlushResult"):
        from swipeq.queue import models

        return getattr(models, name)

    if name in ("QueueError", "ErrorKind"):
        from swipeq.queue import errors

        return getattr(errors, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "SwipeSession",
    "SwipeEvent",
    "SwipeDirection",
    "ResumeSettings",
    "FlushResult",
    "QueueError",
    "ErrorKind",
]
