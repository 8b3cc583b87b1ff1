"""Provider configuration and request options."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    """Configuration for a Provider."""

    origin: str = ""                        # Prefix for every request path
    key_field: str = "key"                  # Identity field read from each object
    interval_ms: Optional[int] = Field(default=None, ge=1)
    drop_stale: bool = True                 # Drop responses older than the last applied pass


class RequestOptions(BaseModel):
    """Options passed through to the network capability for one fetch."""

    method: str = "GET"
    headers: Dict[str, str] = {}
    params: Dict[str, Any] = {}
    json_body: Optional[Any] = None
    timeout_s: Optional[float] = None
