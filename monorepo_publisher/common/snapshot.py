from __future__ import annotations

import json
from typing import TypeVar

T = TypeVar("T")


def snapshot(value: T) -> T:
    """Return a full structural clone of a JSON-compatible value.

    Work-unit state bags are captured into (and restored from) checkpoints
    through this function, so the copy never shares containers with the
    original. The clone goes through a JSON round-trip: tuples come back as
    lists, and values that JSON cannot represent (callables, open handles,
    arbitrary objects) raise TypeError instead of being copied by reference.
    State bags must therefore only hold plain data.
    """
    return json.loads(json.dumps(value))
