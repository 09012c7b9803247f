#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Threshold (m-of-n multisig) witness script and its P2WSH address.

The witness script is

    OP_m <pub_key_1> ... <pub_key_n> OP_n OP_CHECKMULTISIG

with the public keys in the given order:
keys are never sorted nor deduplicated,
because the script (hence the address) must be a pure function
of the ordered key list and of the threshold.

The address is the bech32 P2WSH address of sha256(script).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from btclib.b32 import p2wsh, witness_from_address
from btclib.ec import point_from_octets
from btclib.exceptions import BTClibValueError
from btclib.hashes import sha256
from btclib.network import NETWORKS
from btclib.script.script import serialize
from btclib.utils import bytes_from_octets

from keyproof.exceptions import (
    InvalidAddressError,
    InvalidKeyError,
    InvalidThresholdError,
    ScriptMismatchError,
)

_OP_1 = 0x50 + 1
_OP_CHECKMULTISIG = 0xAE
_PUB_KEY_SIZE = 33


def assert_valid_pub_key(pub_key: bytes) -> None:

    if len(pub_key) != _PUB_KEY_SIZE or pub_key[0] not in (2, 3):
        raise InvalidKeyError(f"not a compressed public key: {pub_key.hex()}")
    try:
        point_from_octets(pub_key)
    except BTClibValueError as e:
        raise InvalidKeyError(f"invalid public key: {pub_key.hex()}") from e


@dataclass(frozen=True)
class ThresholdScript:
    pub_keys: tuple[bytes, ...]
    m: int

    def __init__(
        self, pub_keys: Iterable[bytes | str], m: int, check_validity: bool = True
    ) -> None:

        object.__setattr__(
            self, "pub_keys", tuple(bytes_from_octets(k) for k in pub_keys)
        )
        object.__setattr__(self, "m", m)

        if check_validity:
            self.assert_valid()

    @property
    def n(self) -> int:
        return len(self.pub_keys)

    @property
    def script(self) -> bytes:
        "The serialized witness script."
        return serialize(
            [f"OP_{self.m}", *self.pub_keys, f"OP_{self.n}", "OP_CHECKMULTISIG"]
        )

    def assert_valid(self) -> None:

        if not 1 <= self.n <= 16:
            raise InvalidThresholdError(f"invalid number of keys: {self.n}")
        if not isinstance(self.m, int) or not 1 <= self.m <= self.n:
            err_msg = f"invalid threshold: {self.m}-of-{self.n}"
            raise InvalidThresholdError(err_msg)
        for pub_key in self.pub_keys:
            assert_valid_pub_key(pub_key)

    def positions(self, pub_key: bytes) -> list[int]:
        "Return the positions of a public key in the script, in script order."

        positions = [i for i, k in enumerate(self.pub_keys) if k == pub_key]
        if not positions:
            raise InvalidKeyError(f"key not in script: {pub_key.hex()}")
        return positions

    def index(self, pub_key: bytes) -> int:
        "Return the first position of a public key in the script."
        return self.positions(pub_key)[0]

    def address(self, network: str = "mainnet") -> str:
        return derive_address(self, network)


def build_script(pub_keys: Sequence[bytes | str], m: int) -> ThresholdScript:
    "Return the m-of-n threshold script of the ordered public keys."
    return ThresholdScript(pub_keys, m)


def derive_address(
    threshold_script: ThresholdScript | bytes, network: str = "mainnet"
) -> str:
    "Return the bech32 P2WSH address of a witness script."

    if isinstance(threshold_script, ThresholdScript):
        threshold_script = threshold_script.script
    if network not in NETWORKS:
        raise InvalidAddressError(f"unknown network: {network}")
    return p2wsh(threshold_script, network)


def witness_program_from_address(address: str) -> tuple[bytes, str]:
    "Return the 32 bytes P2WSH witness program and the network of an address."

    try:
        wit_ver, wit_prg, network = witness_from_address(address)
    except (BTClibValueError, ValueError) as e:
        raise InvalidAddressError(f"invalid address: {address}") from e
    if wit_ver != 0 or len(wit_prg) != 32:
        raise InvalidAddressError(f"not a P2WSH address: {address}")
    return wit_prg, network


def script_pub_key_from_address(address: str) -> bytes:
    "Return the P2WSH script_pub_key of an address."

    wit_prg, _ = witness_program_from_address(address)
    return serialize(["OP_0", wit_prg])


def parse_script(script_bytes: bytes | str) -> ThresholdScript:
    """Return the threshold script serialized as script_bytes.

    Only the exact byte layout of a witness script built by build_script
    is accepted.
    """

    script_bytes = bytes_from_octets(script_bytes)
    length = len(script_bytes)
    # OP_m + n * (push + key) + OP_n + OP_CHECKMULTISIG
    n, remainder = divmod(length - 3, _PUB_KEY_SIZE + 1)
    if length < 3 or remainder or not 1 <= n <= 16:
        raise ScriptMismatchError(f"not a threshold script: {script_bytes.hex()}")
    if script_bytes[-1] != _OP_CHECKMULTISIG or script_bytes[-2] != _OP_1 + n - 1:
        raise ScriptMismatchError(f"not a threshold script: {script_bytes.hex()}")
    m = script_bytes[0] - _OP_1 + 1
    if not 1 <= m <= n:
        raise ScriptMismatchError(f"invalid threshold in script: {script_bytes.hex()}")

    pub_keys = []
    for i in range(1, length - 2, _PUB_KEY_SIZE + 1):
        if script_bytes[i] != _PUB_KEY_SIZE:
            err_msg = f"invalid public key push in script: {script_bytes.hex()}"
            raise ScriptMismatchError(err_msg)
        pub_keys.append(script_bytes[i + 1 : i + 1 + _PUB_KEY_SIZE])

    try:
        threshold_script = ThresholdScript(pub_keys, m)
    except InvalidKeyError as e:
        raise ScriptMismatchError(f"invalid key in script: {e}") from e
    # round trip as last resort
    if threshold_script.script != script_bytes:
        raise ScriptMismatchError(f"not a threshold script: {script_bytes.hex()}")
    return threshold_script


def script_hash(threshold_script: ThresholdScript | bytes) -> bytes:
    "Return the P2WSH witness program of a witness script."

    if isinstance(threshold_script, ThresholdScript):
        threshold_script = threshold_script.script
    return sha256(threshold_script)
