from __future__ import annotations

import sys

PREFIX = "[procbridge]"


def log(msg: str) -> None:
    # stderr, so relayed process stdout stays clean; detached mode folds it into the log file.
    try:
        print(f"{PREFIX} {msg}", file=sys.stderr, flush=True)
    except Exception:
        pass


def describe_exc(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
