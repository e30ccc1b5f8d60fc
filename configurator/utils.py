from collections.abc import Mapping
from typing import Any

import orjson
import xxhash


def format_error_message(err: BaseException):
    msg = f"{err}"
    # If the exeption doesn't have a meaningful string representation,
    # set it to the exception type's name so something more useful is logged.
    if msg == "":
        msg = f"{type(err).__name__}"

    return msg


def sort_dict(obj: Any) -> Any:
    if isinstance(obj, Mapping):
        return {k: sort_dict(v) for k, v in sorted(obj.items())}
    if isinstance(obj, list):
        return [sort_dict(item) for item in obj]
    return obj


def stable_digest(*parts: Any) -> str:
    """
    Returns a hex digest which is identical for equal JSON values,
    regardless of the insertion order of their object properties.
    """

    hasher = xxhash.xxh3_128()
    for part in parts:
        hasher.update(orjson.dumps(sort_dict(part), default=str))
        hasher.update(b"\n")

    return hasher.hexdigest()


def title_case(s: str, separator: str = "_") -> str:
    return " ".join(word[:1].upper() + word[1:] for word in s.split(separator) if word)
