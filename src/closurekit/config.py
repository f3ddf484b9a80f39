"""Library configuration.

``CONFIG`` is the process-wide configuration, split into sections:

    - ``SIGNING``: the HMAC key and hash algorithm used by ``seal``/``unseal``
      and signed ``SerializableClosure`` payloads,
    - ``CAPTURE``: an optional transform applied to the captured variables,
    - ``RECONSTRUCT``: an optional resolver applied before rebuilding, and the
      limits on compiled source.

Every public operation also accepts an explicit ``ConfigModel``.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterator, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

TransformHook = Callable[[Dict[str, Any]], Dict[str, Any]]


class SigningConfigModel(BaseModel):
    """Key and algorithm for signed payloads. A str key is encoded as UTF-8."""

    model_config = ConfigDict(validate_assignment=True)

    KEY: Optional[bytes] = None
    ALGORITHM: str = "sha256"

    @field_validator("KEY", mode="before")
    @classmethod
    def _encode_key(cls, value: Union[str, bytes, None]) -> Optional[bytes]:
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    @field_validator("ALGORITHM")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        import hashlib

        if value not in hashlib.algorithms_available:
            raise ValueError(f"Unknown hash algorithm '{value}'")
        return value


class CaptureConfigModel(BaseModel):
    """``TRANSFORM`` maps the live captured variables before they are walked."""

    model_config = ConfigDict(validate_assignment=True, arbitrary_types_allowed=True)

    TRANSFORM: Optional[Callable] = None


class ReconstructConfigModel(BaseModel):
    """``RESOLVER`` maps the captured variables before a function is rebuilt."""

    model_config = ConfigDict(validate_assignment=True, arbitrary_types_allowed=True)

    RESOLVER: Optional[Callable] = None
    MAX_SOURCE_LENGTH: int = 1 << 20
    CODE_CACHE_SIZE: int = 256


class ConfigModel(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    SIGNING: SigningConfigModel = Field(default_factory=SigningConfigModel)
    CAPTURE: CaptureConfigModel = Field(default_factory=CaptureConfigModel)
    RECONSTRUCT: ReconstructConfigModel = Field(default_factory=ReconstructConfigModel)

    def set_signing_key(self, key: Union[str, bytes, None]) -> None:
        self.SIGNING.KEY = key

    def set_capture_transform(self, transform: Optional[TransformHook]) -> None:
        self.CAPTURE.TRANSFORM = transform

    def set_capture_resolver(self, resolver: Optional[TransformHook]) -> None:
        self.RECONSTRUCT.RESOLVER = resolver

    def reset(self) -> None:
        """Restore every section to its defaults."""
        self.SIGNING = SigningConfigModel()
        self.CAPTURE = CaptureConfigModel()
        self.RECONSTRUCT = ReconstructConfigModel()


CONFIG = ConfigModel()

# Config used by the unpickler while a payload is being loaded. Reduce
# callables only receive pickled arguments, so the active config travels here.
_active: ContextVar[Optional[ConfigModel]] = ContextVar("closurekit_config", default=None)


def active_config(config: Optional[ConfigModel] = None) -> ConfigModel:
    if config is not None:
        return config
    current = _active.get()
    return current if current is not None else CONFIG


@contextmanager
def using(config: Optional[ConfigModel]) -> Iterator[ConfigModel]:
    """Make ``config`` the active configuration for the duration of the block."""
    resolved = active_config(config)
    token = _active.set(resolved)
    try:
        yield resolved
    finally:
        _active.reset(token)
