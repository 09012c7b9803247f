#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Partial signatures and witness assembly.

Each key holder signs the proof transaction independently,
possibly on a separate machine and in any order.
A partial signature carries the derivation path of the key that produced it:
the assembler resolves every signature to its signer slot by path,
never by arrival order,
and lays the signatures out in the order of the script public keys,
as required by OP_CHECKMULTISIG.

The witness stack of an m-of-n proof is

    [b"", sig_1, ..., sig_m, witness_script]

where the leading empty element is consumed by the off-by-one
OP_CHECKMULTISIG bug (it must be empty because of NULLDUMMY).
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from btclib.ecc import dsa
from btclib.exceptions import BTClibValueError
from btclib.script import sig_hash
from btclib.script.witness import Witness
from btclib.to_prv_key import prv_keyinfo_from_prv_key
from btclib.tx import Tx
from btclib.utils import bytes_from_octets

from keyproof.der_path import DerPath, str_from_path
from keyproof.exceptions import (
    InvalidKeyError,
    MalformedWitnessError,
    UnresolvedSignerError,
)
from keyproof.hd_keys import KeyPair
from keyproof.params import DEFAULT_PROTOCOL, ProtocolParams
from keyproof.threshold import ThresholdScript, parse_script

_log = logging.getLogger(__name__)


def _script_bytes(threshold_script: ThresholdScript | bytes) -> bytes:
    if isinstance(threshold_script, ThresholdScript):
        return threshold_script.script
    return bytes_from_octets(threshold_script)


@dataclass(frozen=True)
class PartialSignature:
    "A DER signature, with hash_type byte, and the path of the signing key."

    path: str
    signature: bytes

    def __init__(
        self, path: DerPath, signature: bytes | str, check_validity: bool = True
    ) -> None:

        object.__setattr__(self, "path", str_from_path(path))
        object.__setattr__(self, "signature", bytes_from_octets(signature))

        if check_validity:
            self.assert_valid()

    @property
    def hash_type(self) -> int:
        return self.signature[-1]

    def assert_valid(self) -> None:

        if len(self.signature) < 2:
            raise MalformedWitnessError(f"invalid signature: {self.signature.hex()}")
        try:
            dsa.Sig.parse(self.signature[:-1])
        except (BTClibValueError, ValueError) as e:
            err_msg = f"invalid DER signature: {self.signature.hex()}"
            raise MalformedWitnessError(err_msg) from e
        # the signature must commit to the entire transaction
        if self.hash_type != sig_hash.ALL:
            raise MalformedWitnessError(f"invalid sig_hash type: {hex(self.hash_type)}")


def signature_hash(
    tx: Tx,
    threshold_script: ThresholdScript | bytes,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> bytes:
    "Return the segwit v0 signing digest of the proof transaction input."

    script_ = _script_bytes(threshold_script)
    return sig_hash.segwit_v0(script_, tx, 0, params.hash_type, params.amount)


def _sign(
    tx: Tx,
    threshold_script: ThresholdScript | bytes,
    prv_key: int,
    path: DerPath,
    params: ProtocolParams,
) -> PartialSignature:

    msg_hash = signature_hash(tx, threshold_script, params)
    # RFC6979 deterministic nonce, low-s
    sig = dsa.sign_(msg_hash, prv_key)
    der_sig = sig.serialize() + params.hash_type.to_bytes(1, byteorder="big")
    return PartialSignature(path, der_sig)


def sign(
    tx: Tx,
    threshold_script: ThresholdScript | bytes,
    key_pair: KeyPair,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> PartialSignature:
    "Sign the proof transaction with a derived key pair."
    return _sign(tx, threshold_script, key_pair.prv_key, key_pair.path, params)


def sign_with_wif(
    tx: Tx,
    threshold_script: ThresholdScript | bytes,
    wif: str,
    path: DerPath,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> PartialSignature:
    "Sign the proof transaction with a WIF private key derived at path."

    try:
        prv_key, _, _ = prv_keyinfo_from_prv_key(wif)
    except (BTClibValueError, ValueError) as e:
        raise InvalidKeyError("invalid WIF private key") from e
    return _sign(tx, threshold_script, prv_key, path, params)


class SignerSlots:
    """The signer slots of a threshold script, keyed by derivation path.

    Each path maps to the public key derived at that path,
    which must be one of the script public keys.
    A key repeated in the script gives its slots distinct positions,
    assigned in script order as the slots are listed.
    """

    def __init__(
        self,
        threshold_script: ThresholdScript | bytes,
        pub_keys: Mapping[str, bytes | str],
    ) -> None:

        if not isinstance(threshold_script, ThresholdScript):
            threshold_script = parse_script(threshold_script)
        self.threshold_script = threshold_script
        self._slots: dict[str, bytes] = {}
        self._positions: dict[str, int] = {}
        for path, pub_key in pub_keys.items():
            pub_key = bytes_from_octets(pub_key)
            # raise InvalidKeyError if not in script
            positions = threshold_script.positions(pub_key)
            path = str_from_path(path)
            if path in self._slots:
                raise InvalidKeyError(f"duplicated signer slot: {path}")
            self._slots[path] = pub_key
            used = set(self._positions.values())
            free = [i for i in positions if i not in used]
            # more slots than occurrences share the first one
            self._positions[path] = free[0] if free else positions[0]

    @classmethod
    def from_key_pairs(
        cls, threshold_script: ThresholdScript | bytes, key_pairs: Iterable[KeyPair]
    ) -> SignerSlots:
        return cls(threshold_script, {kp.path: kp.pub_key for kp in key_pairs})

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, path: object) -> bool:
        try:
            return str_from_path(path) in self._slots  # type: ignore
        except ValueError:
            return False

    @property
    def paths(self) -> list[str]:
        return list(self._slots)

    def pub_key(self, path: DerPath) -> bytes:
        "Return the public key of the signer slot at path."

        path = str_from_path(path)
        if path not in self._slots:
            raise UnresolvedSignerError(f"unknown signer slot: {path}", path)
        return self._slots[path]

    def resolve(self, path: DerPath) -> int:
        "Return the script position of the signer slot at path."

        # raise UnresolvedSignerError for unknown paths
        self.pub_key(path)
        return self._positions[str_from_path(path)]


def assemble_witness(
    partial_signatures: Sequence[PartialSignature],
    threshold_script: ThresholdScript | bytes,
    m: int,
    slots: SignerSlots,
) -> Witness:
    """Return the witness stack of exactly m resolved partial signatures.

    Signatures may be given in any order:
    each one is resolved to its script position through the path
    it carries, then the stack is laid out in script order.
    Missing or extra signatures are never padded nor dropped.
    """

    script_ = _script_bytes(threshold_script)
    if script_ != slots.threshold_script.script:
        raise MalformedWitnessError("signer slots of another script")
    if m != slots.threshold_script.m:
        err_msg = f"threshold mismatch: {m} instead of {slots.threshold_script.m}"
        raise MalformedWitnessError(err_msg)
    if len(partial_signatures) != m:
        err_msg = f"invalid number of signatures: {len(partial_signatures)}"
        err_msg += f" instead of {m}"
        raise MalformedWitnessError(err_msg)

    positioned: dict[int, bytes] = {}
    for partial_signature in partial_signatures:
        position = slots.resolve(partial_signature.path)
        if position in positioned:
            err_msg = f"duplicated signature for slot: {partial_signature.path}"
            raise MalformedWitnessError(err_msg)
        positioned[position] = partial_signature.signature

    stack = [b""]
    stack.extend(positioned[position] for position in sorted(positioned))
    stack.append(script_)
    if len(stack) != m + 2:
        raise MalformedWitnessError(f"invalid witness size: {len(stack)}")
    return Witness(stack)


class SignatureCollector:
    """Collect partial signatures until the threshold is reached.

    Signatures are accepted in any order; unknown paths and
    duplicated signer slots are rejected as soon as they are added.
    """

    def __init__(self, slots: SignerSlots, m: int | None = None) -> None:

        self.slots = slots
        self.m = slots.threshold_script.m if m is None else m
        self._signatures: dict[str, PartialSignature] = {}

    def add(self, partial_signature: PartialSignature) -> None:

        path = partial_signature.path
        # raise UnresolvedSignerError for unknown paths
        self.slots.resolve(path)
        if path in self._signatures:
            raise MalformedWitnessError(f"duplicated signature for slot: {path}")
        if self.is_complete():
            raise MalformedWitnessError(f"already {self.m} signatures")
        self._signatures[path] = partial_signature
        _log.debug("signature %d of %d: %s", len(self._signatures), self.m, path)

    def is_complete(self) -> bool:
        return len(self._signatures) == self.m

    @property
    def missing(self) -> int:
        return self.m - len(self._signatures)

    @property
    def partial_signatures(self) -> list[PartialSignature]:
        return list(self._signatures.values())

    def assemble(self) -> Witness:
        return assemble_witness(
            self.partial_signatures, self.slots.threshold_script, self.m, self.slots
        )


def finalize(tx: Tx, witness: Witness) -> Tx:
    "Return a copy of the proof transaction carrying the witness."

    signed_tx = copy.deepcopy(tx)
    signed_tx.vin[0].script_witness = witness
    return signed_tx
