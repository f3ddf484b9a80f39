"""HMAC envelope around serialized closures.

A signed payload is the JSON document::

    {"payload": "<base64 pickle bytes>", "hash": "<base64 HMAC of the bytes>"}

``unseal`` checks the hash before a single byte of the payload is unpickled,
so a payload that was modified in storage never reaches the unpickler.
"""

import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from .config import ConfigModel, active_config
from .errors import InvalidSignatureError, MissingKeyError
from .serialization import dumps, loads

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedEnvelope:
    payload: bytes
    hash: bytes

    def encode(self) -> bytes:
        return json.dumps(
            {
                "payload": base64.b64encode(self.payload).decode("ascii"),
                "hash": self.hash.decode("ascii"),
            }
        ).encode("utf-8")

    @classmethod
    def decode(cls, data: Union[str, bytes]) -> "SignedEnvelope":
        """Parse an encoded envelope.

        Raises:
            InvalidSignatureError: If ``data`` is not a well formed envelope.
        """
        try:
            document = json.loads(data)
            payload = base64.b64decode(document["payload"], validate=True)
            signature = document["hash"].encode("ascii")
        except (ValueError, KeyError, TypeError, AttributeError, binascii.Error) as e:
            raise InvalidSignatureError() from e

        return cls(payload=payload, hash=signature)


class HmacSigner:
    """Signs and verifies payloads with a keyed hash."""

    def __init__(self, key: bytes, algorithm: str = "sha256"):
        self.key = key
        self.algorithm = algorithm

    def digest(self, payload: bytes) -> bytes:
        return base64.b64encode(hmac.new(self.key, payload, self.algorithm).digest())

    def sign(self, payload: bytes) -> SignedEnvelope:
        return SignedEnvelope(payload=payload, hash=self.digest(payload))

    def verify(self, envelope: SignedEnvelope) -> bool:
        return hmac.compare_digest(self.digest(envelope.payload), envelope.hash)


def signer_for(config: Optional[ConfigModel] = None) -> Optional[HmacSigner]:
    """The signer for the configured key, or None when no key is set."""
    config = active_config(config)
    if config.SIGNING.KEY is None:
        return None
    return HmacSigner(config.SIGNING.KEY, config.SIGNING.ALGORITHM)


def _require_signer(config: Optional[ConfigModel]) -> HmacSigner:
    signer = signer_for(config)
    if signer is None:
        raise MissingKeyError()
    return signer


def sign(payload: bytes, config: Optional[ConfigModel] = None) -> SignedEnvelope:
    """Sign ``payload`` with the configured key.

    Raises:
        MissingKeyError: If no signing key is configured.
    """
    return _require_signer(config).sign(payload)


def verify(envelope: SignedEnvelope, config: Optional[ConfigModel] = None) -> bool:
    """Check ``envelope`` against the configured key.

    Raises:
        MissingKeyError: If no signing key is configured.
    """
    return _require_signer(config).verify(envelope)


def seal(
    obj: Any,
    path: Optional[Union[str, Path]] = None,
    config: Optional[ConfigModel] = None,
) -> Optional[bytes]:
    """Serialize ``obj`` with ``dumps`` and wrap the bytes in a signed envelope.

    Returns:
        If path is None: The encoded envelope as bytes.
        If path is provided: None (the envelope is written to file).

    Raises:
        MissingKeyError: If no signing key is configured.
    """
    signer = _require_signer(config)
    data = signer.sign(dumps(obj, config=config)).encode()

    if path is None:
        return data

    Path(path).write_bytes(data)


def unseal(
    data: Union[str, bytes, Path],
    config: Optional[ConfigModel] = None,
) -> Any:
    """Verify a sealed envelope and load its payload.

    Args:
        data: Encoded envelope bytes, or a path to a file holding them.

    Raises:
        MissingKeyError: If no signing key is configured.
        InvalidSignatureError: If the envelope is malformed or its hash does not
            match the payload.
    """
    signer = _require_signer(config)

    if not isinstance(data, (bytes, bytearray)):
        data = Path(data).read_bytes()

    envelope = SignedEnvelope.decode(data)

    if not signer.verify(envelope):
        logger.debug("Rejected signed payload of %d bytes", len(envelope.payload))
        raise InvalidSignatureError()

    return loads(envelope.payload, config=config)
