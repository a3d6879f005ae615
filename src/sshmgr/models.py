"""
Credential data model.

The document on disk (ssh_hosts.json) looks like:

    {
      "version": 2,
      "hosts":     [{"name", "login", "ip", "port", "password_id", "credential_id", ...}],
      "passwords": [{"id", "description", "password"}],
      "keys":      [{"id", "description", "path" | "key_data"}]
    }

Secrets (``password``, ``key_data``) are always sealed with the
CipherEngine. Hosts point at their credential through the stable
``credential_id``; the positional ``password_id`` (>= 0 -> passwords[i],
< 0 -> keys[-(i + 1)]) is kept in sync for older readers. A host without
``credential_id`` is bound from ``password_id`` once, by ``normalize``;
after that an unbound host has ``password_id`` None and resolves to nothing.
"""

from __future__ import annotations

import uuid
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from .crypto import CipherEngine
from .fsutil import sanitize_filename

DOCUMENT_VERSION = 2
KEY_FILE_SUFFIX = ".key"


def _new_id() -> str:
    return uuid.uuid4().hex


class Password(BaseModel):
    """A named, sealed password."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    description: str
    password: str

    @field_validator("description")
    @classmethod
    def _description_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description must not be empty")
        return value

    @classmethod
    def create(cls, description: str, secret: str, cipher: CipherEngine) -> "Password":
        """Build a Password, sealing the plaintext secret."""
        if not secret:
            raise ValueError("password must not be empty")
        return cls(description=description, password=cipher.encrypt(secret))

    def reveal(self, cipher: CipherEngine) -> str:
        return cipher.decrypt(self.password)


class Key(BaseModel):
    """An SSH private key, either stored inline (sealed) or referenced by path."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    description: str
    path: str = ""
    key_data: str = ""

    # Plaintext material for the lifetime of an edit; never serialized.
    _raw_key_data: Optional[str] = PrivateAttr(default=None)

    @field_validator("path", "key_data", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return "" if value is None else value

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "Key":
        if not self.description.strip():
            raise ValueError("description must not be empty")
        if bool(self.path) == bool(self.key_data):
            raise ValueError("exactly one of path or key_data must be set")
        return self

    @classmethod
    def create(
        cls,
        description: str,
        cipher: CipherEngine,
        path: str = "",
        key_data: str = "",
    ) -> "Key":
        """Build a Key, sealing inline material and keeping it for materialization."""
        if key_data:
            key = cls(description=description, key_data=cipher.encrypt(key_data))
            key._raw_key_data = key_data
            return key
        return cls(description=description, path=path)

    @property
    def is_local(self) -> bool:
        """True if the key material lives inside the document."""
        return bool(self.key_data)

    @property
    def file_name(self) -> str:
        return sanitize_filename(self.description) + KEY_FILE_SUFFIX

    def reveal(self, cipher: CipherEngine) -> str:
        if self._raw_key_data is not None:
            return self._raw_key_data
        return cipher.decrypt(self.key_data)


Credential = Union[Password, Key]


class Host(BaseModel):
    """A remote SSH endpoint."""

    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    login: str
    ip: str
    port: str = "22"
    password_id: Optional[int] = None
    credential_id: Optional[str] = None
    terminal_type: str = ""
    keep_alive: bool = False
    compression: bool = False

    @field_validator("name", "login", "ip")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("port", mode="before")
    @classmethod
    def _valid_port(cls, value) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            return "22"
        if not text.isdigit() or not 1 <= int(text) <= 65535:
            raise ValueError(f"invalid port: {value!r}")
        return str(int(text))

    @property
    def address(self) -> str:
        return self.ip


class CredentialDocument(BaseModel):
    """The whole persisted credential set."""

    version: int = DOCUMENT_VERSION
    hosts: list[Host] = Field(default_factory=list)
    passwords: list[Password] = Field(default_factory=list)
    keys: list[Key] = Field(default_factory=list)

    @field_validator("hosts", "passwords", "keys", mode="before")
    @classmethod
    def _null_is_empty(cls, value):
        return [] if value is None else value

    def find_credential(self, credential_id: Optional[str]) -> Optional[Credential]:
        if not credential_id:
            return None
        for item in self.passwords:
            if item.id == credential_id:
                return item
        for item in self.keys:
            if item.id == credential_id:
                return item
        return None

    def credential_at(self, ref: int) -> Optional[Credential]:
        """Decode a positional reference (see module docstring)."""
        if ref >= 0:
            return self.passwords[ref] if ref < len(self.passwords) else None
        index = -(ref + 1)
        return self.keys[index] if index < len(self.keys) else None

    def ref_for(self, credential: Credential) -> Optional[int]:
        """Encode credential as a positional reference."""
        if isinstance(credential, Password):
            for i, item in enumerate(self.passwords):
                if item.id == credential.id:
                    return i
        else:
            for i, item in enumerate(self.keys):
                if item.id == credential.id:
                    return -(i + 1)
        return None

    def resolve(self, host: Host) -> Optional[Credential]:
        """The host's credential: by stable id, else by position, else None."""
        found = self.find_credential(host.credential_id)
        if found is not None or host.password_id is None:
            return found
        return self.credential_at(host.password_id)

    def referencing_hosts(self, credential_id: str) -> list[Host]:
        users = []
        for host in self.hosts:
            credential = self.resolve(host)
            if credential is not None and credential.id == credential_id:
                users.append(host)
        return users

    def normalize(self) -> "CredentialDocument":
        """Bind every host to a stable id and refresh its positional ref.

        Hosts whose ``credential_id`` is missing or unknown are resolved
        from ``password_id``. Afterwards ``password_id`` always encodes
        the current position of the referenced credential, and is None
        for hosts that resolve to nothing.
        """
        for host in self.hosts:
            credential = self.resolve(host)
            if credential is None:
                host.credential_id = None
                host.password_id = None
                continue
            host.credential_id = credential.id
            host.password_id = self.ref_for(credential)
        return self
