"""Payload of the lightning node's `htlc_accepted` hook."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1
_DIGITS = re.compile(r"\+?[0-9]+")
_ONION_HASH_FIELD = "shared_secret"


def parse_msat_amount(text: str) -> int:
    """Parse an amount such as "1000msat" into millisatoshis.

    The last four characters are the unit suffix and are dropped unread.
    """
    if not isinstance(text, str):
        raise ValueError(f"amount must be a string, got {type(text).__name__}")
    if len(text) < 4:
        raise ValueError(f"amount too short: {text!r}")
    number = text[:-4]
    if not _DIGITS.fullmatch(number):
        raise ValueError(f"invalid amount: {text!r}")
    value = int(number)
    if value > _U64_MAX:
        raise ValueError(f"amount out of range: {text!r}")
    return value


def _field(data: Mapping[str, Any], name: str) -> Any:
    try:
        return data[name]
    except KeyError:
        raise ValueError(f"missing field `{name}`") from None


def _u32(data: Mapping[str, Any], name: str) -> int:
    value = _field(data, name)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U32_MAX:
        raise ValueError(f"field `{name}` must be an unsigned 32-bit integer")
    return value


def _string(data: Mapping[str, Any], name: str) -> str:
    value = _field(data, name)
    if not isinstance(value, str):
        raise ValueError(f"field `{name}` must be a string")
    return value


def _sha256(data: Mapping[str, Any], name: str) -> bytes:
    text = _string(data, name)
    try:
        digest = bytes.fromhex(text)
    except ValueError:
        raise ValueError(f"field `{name}` is not valid hex") from None
    if len(digest) != 32:
        raise ValueError(f"field `{name}` must be 32 bytes")
    return digest


def _mapping(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = _field(data, name)
    if not isinstance(value, Mapping):
        raise ValueError(f"field `{name}` must be an object")
    return value


@dataclass(frozen=True)
class Htlc:
    """The incoming HTLC; `amount` is in millisatoshis."""

    amount: int
    cltv_expiry: int
    cltv_expiry_relative: int
    payment_hash: bytes

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Htlc:
        """Build from the hook's `htlc` object."""
        return cls(
            amount=parse_msat_amount(_string(data, "amount")),
            cltv_expiry=_u32(data, "cltv_expiry"),
            cltv_expiry_relative=_u32(data, "cltv_expiry_relative"),
            payment_hash=_sha256(data, "payment_hash"),
        )


@dataclass(frozen=True)
class Onion:
    """The onion part of the hook; `forward_amount` is in millisatoshis."""

    payload: str
    type_: str
    short_channel_id: str
    forward_amount: int
    outgoing_cltv_value: int
    shared_secret: bytes
    next_onion: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Onion:
        """Build from the hook's `onion` object."""
        return cls(
            payload=_string(data, "payload"),
            type_=_string(data, "type"),
            short_channel_id=_string(data, "short_channel_id"),
            forward_amount=parse_msat_amount(_string(data, "forward_amount")),
            outgoing_cltv_value=_u32(data, "outgoing_cltv_value"),
            shared_secret=_sha256(data, _ONION_HASH_FIELD),
            next_onion=_string(data, "next_onion"),
        )


@dataclass(frozen=True)
class HtlcAccepted:
    """The whole `htlc_accepted` hook payload."""

    htlc: Htlc
    onion: Onion

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HtlcAccepted:
        """Build from the decoded JSON of the hook call."""
        return cls(
            htlc=Htlc.from_dict(_mapping(data, "htlc")),
            onion=Onion.from_dict(_mapping(data, "onion")),
        )