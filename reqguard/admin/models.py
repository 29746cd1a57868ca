from typing import Literal, Optional
from pydantic import BaseModel

from reqguard.cache.constants import CacheNamespace


class CacheActionIn(BaseModel):
    action: Literal["invalidate", "invalidate_all", "flush"]
    namespace: Optional[CacheNamespace] = None

    model_config = {"extra": "forbid"}
