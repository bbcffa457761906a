"""Self-describing ciphertext envelopes.

An envelope carries everything needed to decrypt it later except the key
itself: the key id and version, the algorithm, the nonce and the
authentication tag. Storage layers must keep the serialized form intact.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class EnvelopeMetadata:
    """Context stamped onto an envelope at encryption time."""

    purpose: str
    organization_id: str
    data_type: str
    encrypted_at: datetime


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext plus the metadata required to decrypt it.

    ``ciphertext``, ``iv`` and ``auth_tag`` are hex encoded.
    """

    ciphertext: str
    key_id: str
    key_version: int
    algorithm: str
    iv: str
    auth_tag: str
    metadata: EnvelopeMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.ciphertext,
            "keyId": self.key_id,
            "keyVersion": self.key_version,
            "algorithm": self.algorithm,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "metadata": {
                "purpose": self.metadata.purpose,
                "organizationId": self.metadata.organization_id,
                "dataType": self.metadata.data_type,
                "encryptedAt": self.metadata.encrypted_at.isoformat(),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedEnvelope":
        """Rebuild an envelope from :meth:`to_dict` output.

        Raises:
            ValueError: If a required field is missing or malformed
        """
        try:
            meta = data["metadata"]
            return cls(
                ciphertext=data["data"],
                key_id=data["keyId"],
                key_version=int(data["keyVersion"]),
                algorithm=data["algorithm"],
                iv=data["iv"],
                auth_tag=data["authTag"],
                metadata=EnvelopeMetadata(
                    purpose=meta["purpose"],
                    organization_id=meta["organizationId"],
                    data_type=meta["dataType"],
                    encrypted_at=datetime.fromisoformat(meta["encryptedAt"]),
                ),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid envelope: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, payload: str) -> "EncryptedEnvelope":
        return cls.from_dict(json.loads(payload))
