"""Typed environment variable specs, parsed on demand."""

import os
from typing import Any, Callable, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, create_model, ValidationError

from utils import log

logger = log.get_logger(__name__)


class EnvVarSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    """Return the parsed value of *spec*, or None when it is unset and optional."""
    value = _raw(spec)
    if value is None:
        if spec.is_optional:
            return None
        raise ValueError(f"Missing required environment variable {spec.id}")
    return spec.parse(value)


def validate(specs: Iterable[EnvVarSpec]) -> bool:
    """Check every spec parses to its declared type. Logs each problem."""
    ok = True
    for spec in specs:
        value = _raw(spec)
        if value is None:
            if not spec.is_optional:
                logger.error(f"Missing required environment variable {spec.id}")
                ok = False
            continue
        shown = "***" if spec.is_secret else value
        try:
            model = create_model(spec.id, value=spec.type)
            model(value=spec.parse(value))
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid value for {spec.id}={shown!r}: {e}")
            ok = False
    return ok
