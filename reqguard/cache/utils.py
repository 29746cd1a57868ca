
import hashlib
import re
from typing import Any

import orjson

from reqguard.common.errors import InvalidConfiguration

# namespaces end up inside SCAN glob patterns, keep them plain
_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9_\-.]+$")


def build_key(*parts: str) -> str:
    joined = ":".join(str(p) for p in parts if p is not None and p != "")
    if len(joined) > 200:
        # keep the namespace readable so scans and invalidation still match
        head, _, rest = joined.partition(":")
        return f"{head}:{hashlib.sha256(rest.encode()).hexdigest()}"
    return joined


def validate_namespace(namespace: str) -> str:
    namespace = getattr(namespace, "value", namespace)
    if not isinstance(namespace, str) or not _NAMESPACE_RE.match(namespace):
        raise InvalidConfiguration(f"invalid cache namespace: {namespace!r}")
    return namespace


def serialize(value: Any) -> bytes:
    return orjson.dumps(value)


def deserialize(b: bytes) -> Any:
    return orjson.loads(b)
