#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Versioned protocol parameters.

The key-possession proof depends on a handful of constants that prover and
verifier must share byte-for-byte: the domain-separation prefix of the
synthetic prior-output reference, the nominal amount committed to by the
signing digest, and the shape of the proof transaction.
They are collected in an immutable ProtocolParams record that is
threaded through the transaction builder, the signer, and the verifier,
so that different protocol versions (or networks) can coexist.

A protocol version is never silently changed:
any modification of the constants requires a new version number.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from os import path
from typing import Any, Mapping, TypeVar

from btclib.amount import valid_sats_amount
from btclib.exceptions import BTClibTypeError, BTClibValueError
from btclib.network import NETWORKS
from btclib.script import sig_hash
from btclib.utils import bytes_from_octets

from keyproof.exceptions import KeyProofValueError

_ProtocolParams = TypeVar("_ProtocolParams", bound="ProtocolParams")


@dataclass(frozen=True)
class ProtocolParams:
    version: int
    # domain separation of the synthetic prior-output reference
    prevout_prefix: bytes
    # nominal value of the synthetic prior output, in satoshi
    amount: int
    # btclib network name: address hrp and BIP32/WIF versions
    network: str
    tx_version: int
    sequence: int
    vout: int
    hash_type: int

    def __init__(
        self,
        version: int,
        prevout_prefix: bytes | str,
        amount: int,
        network: str = "mainnet",
        tx_version: int = 1,
        sequence: int = 0xFFFFFFFF,
        vout: int = 0,
        hash_type: int = sig_hash.ALL,
        check_validity: bool = True,
    ) -> None:

        object.__setattr__(self, "version", version)
        object.__setattr__(self, "prevout_prefix", bytes_from_octets(prevout_prefix))
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "network", network)
        object.__setattr__(self, "tx_version", tx_version)
        object.__setattr__(self, "sequence", sequence)
        object.__setattr__(self, "vout", vout)
        object.__setattr__(self, "hash_type", hash_type)

        if check_validity:
            self.assert_valid()

    def assert_valid(self) -> None:

        if not isinstance(self.version, int) or self.version < 1:
            raise KeyProofValueError(f"invalid protocol version: {self.version}")

        # without a prefix a synthetic reference could be a real tx id
        if not self.prevout_prefix:
            raise KeyProofValueError("empty prevout prefix")

        try:
            valid_sats_amount(self.amount)
        except (BTClibTypeError, BTClibValueError) as e:
            raise KeyProofValueError(f"invalid amount: {self.amount}") from e

        if self.network not in NETWORKS:
            raise KeyProofValueError(f"unknown network: {self.network}")

        if not 0 < self.tx_version <= 0x7FFFFFFF:
            raise KeyProofValueError(f"invalid tx version: {self.tx_version}")

        if not 0 <= self.sequence <= 0xFFFFFFFF:
            raise KeyProofValueError(f"invalid sequence: {self.sequence}")

        # 0xFFFFFFFF is reserved to coinbase inputs
        if not 0 <= self.vout < 0xFFFFFFFF:
            raise KeyProofValueError(f"invalid vout: {self.vout}")

        # the signature must commit to the entire transaction
        if self.hash_type != sig_hash.ALL:
            raise KeyProofValueError(f"invalid sig_hash type: {hex(self.hash_type)}")

    def with_network(self: _ProtocolParams, network: str) -> _ProtocolParams:
        "Return the same protocol version on another network."
        return replace(self, network=network)

    def to_dict(self, check_validity: bool = True) -> dict[str, Any]:

        if check_validity:
            self.assert_valid()

        return {
            "version": self.version,
            "prevout_prefix": self.prevout_prefix.hex(),
            "amount": self.amount,
            "network": self.network,
            "tx_version": self.tx_version,
            "sequence": self.sequence,
            "vout": self.vout,
            "hash_type": self.hash_type,
        }

    @classmethod
    def from_dict(
        cls: type[_ProtocolParams],
        dict_: Mapping[str, Any],
        check_validity: bool = True,
    ) -> _ProtocolParams:

        return cls(
            dict_["version"],
            dict_["prevout_prefix"],
            dict_["amount"],
            dict_.get("network", "mainnet"),
            dict_.get("tx_version", 1),
            dict_.get("sequence", 0xFFFFFFFF),
            dict_.get("vout", 0),
            dict_.get("hash_type", sig_hash.ALL),
            check_validity,
        )


def params_from_file(filename: str) -> ProtocolParams:
    "Load a ProtocolParams record from a json file."

    with open(filename, "r", encoding="ascii") as file_:
        try:
            dict_ = json.load(file_)
        except json.JSONDecodeError as e:
            raise KeyProofValueError(f"invalid protocol file: {filename}") from e
    try:
        return ProtocolParams.from_dict(dict_)
    except KeyError as e:
        raise KeyProofValueError(f"missing protocol field: {e}") from e


PROTOCOLS: dict[int, ProtocolParams] = {}
datadir = path.join(path.dirname(__file__), "_data")
for protocol_version in (1,):
    PROTOCOLS[protocol_version] = params_from_file(
        path.join(datadir, f"protocol_v{protocol_version}.json")
    )

DEFAULT_PROTOCOL = PROTOCOLS[1]


def get_params(version: int = 1, network: str | None = None) -> ProtocolParams:
    "Return the registered parameters of a protocol version."

    if version not in PROTOCOLS:
        raise KeyProofValueError(f"unknown protocol version: {version}")
    params = PROTOCOLS[version]
    if network is not None and network != params.network:
        params = params.with_network(network)
    return params
