"""Device connection string parsing and shared access signatures."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote_plus

from cryptography.hazmat.primitives import hashes, hmac

from .config import ConfigurationError

LOGGER = logging.getLogger(__name__)

_REQUIRED_PARTS = ("HostName", "DeviceId", "SharedAccessKey")


@dataclass(frozen=True, slots=True)
class ConnectionString:
    """Parsed ``HostName=...;DeviceId=...;SharedAccessKey=...`` credential."""

    host_name: str
    device_id: str
    shared_access_key: str
    module_id: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ConnectionString":
        parts: dict[str, str] = {}
        for segment in value.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            key, sep, item = segment.partition("=")
            if not sep:
                raise ConfigurationError(
                    f"Malformed connection string segment: {key!r}"
                )
            parts[key.strip()] = item.strip()

        missing = [name for name in _REQUIRED_PARTS if not parts.get(name)]
        if missing:
            raise ConfigurationError(
                "Connection string is missing " + ", ".join(missing)
            )

        return cls(
            host_name=parts["HostName"],
            device_id=parts["DeviceId"],
            shared_access_key=parts["SharedAccessKey"],
            module_id=parts.get("ModuleId") or None,
        )

    @property
    def resource_uri(self) -> str:
        return f"{self.host_name}/devices/{self.device_id}"

    def redacted(self) -> str:
        return f"HostName={self.host_name};DeviceId={self.device_id};SharedAccessKey=***"


def generate_sas_token(
    resource_uri: str,
    key_b64: str,
    *,
    ttl_seconds: int = 3600,
    clock: Optional[Callable[[], float]] = None,
) -> str:
    """Build a shared access signature for ``resource_uri``.

    The signature is an HMAC-SHA256 over the url-encoded resource and the
    expiry timestamp, keyed with the base64-decoded device key.
    """

    now = (clock or time.time)()
    expiry = int(now + ttl_seconds)
    encoded_uri = quote_plus(resource_uri)

    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("SharedAccessKey is not valid base64") from exc

    signer = hmac.HMAC(key, hashes.SHA256())
    signer.update(f"{encoded_uri}\n{expiry}".encode("utf-8"))
    signature = base64.b64encode(signer.finalize()).decode("ascii")

    LOGGER.debug("Issued SAS token for %s expiring at %d", resource_uri, expiry)

    return (
        f"SharedAccessSignature sr={encoded_uri}"
        f"&sig={quote_plus(signature)}&se={expiry}"
    )
