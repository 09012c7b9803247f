#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Data-interchange records.

The parties of a proof session exchange plain json files,
each one holding a list of records:

- xpubs.json: PublicKeyRecord {xpub, path, pubkey}
- privkeys.json: PrivateKeyRecord {xpriv, derived_priv, path}
- unsigned-tx<i>.json: UnsignedProofRecord {path, tx, vin_values, script_sigs}
  with tx and script_sigs in standard (not url-safe) base64
- PartialSignatureRecord {path, signature} for out-of-band transport

Signer slots are always matched by path, never by position in a list.
Private key files are written readable by the owner only.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import InitVar, dataclass, field
from typing import Any, Iterable, Sequence, TypeVar

from btclib.tx import Tx
from dataclasses_json import DataClassJsonMixin, config

from keyproof.der_path import is_hardened, str_from_path
from keyproof.exceptions import KeyProofValueError, MalformedRecordError
from keyproof.hd_keys import (
    KeyPair,
    PublicExtendedKey,
    derive_public,
    key_pair_from_xprv,
)
from keyproof.params import DEFAULT_PROTOCOL, ProtocolParams
from keyproof.signing import PartialSignature, SignerSlots
from keyproof.threshold import ThresholdScript, assert_valid_pub_key, parse_script

_Record = TypeVar("_Record", bound=DataClassJsonMixin)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise MalformedRecordError(f"invalid base64 data: {data}") from e


@dataclass
class PublicKeyRecord(DataClassJsonMixin):
    # root extended public key
    xpub: str
    path: str
    pub_key: bytes = field(
        metadata=config(field_name="pubkey", encoder=bytes.hex, decoder=bytes.fromhex)
    )
    check_validity: InitVar[bool] = True

    def __post_init__(self, check_validity: bool) -> None:
        if check_validity:
            self.assert_valid()

    def assert_valid(self) -> None:

        self.path = str_from_path(self.path)
        assert_valid_pub_key(self.pub_key)
        xpub = PublicExtendedKey.from_xpub(self.xpub)
        # public derivation is possible along non-hardened paths only
        if not is_hardened(self.path):
            if derive_public(xpub, self.path).pub_key != self.pub_key:
                raise MalformedRecordError(f"pubkey not derived at {self.path}")

    @classmethod
    def from_key_pair(cls, key_pair: KeyPair) -> PublicKeyRecord:
        return cls(key_pair.root_xpub, key_pair.path, key_pair.pub_key)


@dataclass
class PrivateKeyRecord(DataClassJsonMixin):
    # root extended private key
    xpriv: str
    # WIF of the private key derived at path
    derived_priv: str
    path: str
    check_validity: InitVar[bool] = True

    def __post_init__(self, check_validity: bool) -> None:
        if check_validity:
            self.assert_valid()

    def assert_valid(self) -> None:

        self.path = str_from_path(self.path)
        if self.key_pair().wif != self.derived_priv:
            raise MalformedRecordError(f"derived_priv not derived at {self.path}")

    def key_pair(self) -> KeyPair:
        return key_pair_from_xprv(self.xpriv, self.path)

    @classmethod
    def from_key_pair(cls, key_pair: KeyPair) -> PrivateKeyRecord:
        return cls(key_pair.root_xprv, key_pair.wif, key_pair.path)


@dataclass
class UnsignedProofRecord(DataClassJsonMixin):
    path: str
    tx: bytes = field(metadata=config(encoder=_b64encode, decoder=_b64decode))
    vin_values: list[int]
    # the witness script of the single input
    script_sigs: list[bytes] = field(
        metadata=config(
            encoder=lambda v: [_b64encode(x) for x in v],
            decoder=lambda v: [_b64decode(x) for x in v],
        )
    )
    check_validity: InitVar[bool] = True

    def __post_init__(self, check_validity: bool) -> None:
        if check_validity:
            self.assert_valid()

    @property
    def proof_tx(self) -> Tx:
        try:
            tx = Tx.parse(self.tx)
        except (ValueError, RuntimeError, IndexError) as e:
            raise MalformedRecordError(f"invalid transaction: {e}") from e
        # parsing ignores trailing data and a truncated lock_time
        if tx.serialize(include_witness=False) != self.tx:
            err_msg = "invalid transaction: non-canonical serialization"
            raise MalformedRecordError(err_msg)
        return tx

    @property
    def threshold_script(self) -> ThresholdScript:
        try:
            return parse_script(self.script_sigs[0])
        except KeyProofValueError as e:
            raise MalformedRecordError(f"invalid witness script: {e}") from e

    @property
    def amount(self) -> int:
        return self.vin_values[0]

    def assert_valid(self) -> None:

        self.path = str_from_path(self.path)
        if len(self.vin_values) != 1 or len(self.script_sigs) != 1:
            raise MalformedRecordError("not a single input proof transaction")
        if len(self.proof_tx.vin) != 1:
            raise MalformedRecordError("not a single input proof transaction")
        # raise if not a threshold script
        _ = self.threshold_script

    @classmethod
    def from_proof(
        cls,
        path: str,
        tx: Tx,
        threshold_script: ThresholdScript,
        params: ProtocolParams = DEFAULT_PROTOCOL,
    ) -> UnsignedProofRecord:
        tx_bytes = tx.serialize(include_witness=False)
        return cls(path, tx_bytes, [params.amount], [threshold_script.script])


@dataclass
class PartialSignatureRecord(DataClassJsonMixin):
    path: str
    signature: bytes = field(metadata=config(encoder=bytes.hex, decoder=bytes.fromhex))

    def to_partial_signature(self) -> PartialSignature:
        return PartialSignature(self.path, self.signature)

    @classmethod
    def from_partial_signature(
        cls, partial_signature: PartialSignature
    ) -> PartialSignatureRecord:
        return cls(partial_signature.path, partial_signature.signature)


def write_records(
    filename: str,
    records: DataClassJsonMixin | Iterable[DataClassJsonMixin],
    private: bool = False,
) -> None:
    """Write a json list of records, or a single json object.

    Private files are readable by the owner only.
    """

    if isinstance(records, DataClassJsonMixin):
        data = json.dumps(records.to_dict(), indent=2)
    else:
        data = json.dumps([record.to_dict() for record in records], indent=2)
    if private:
        fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # O_CREAT mode is ignored for an existing file
        os.chmod(filename, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as file_:
            file_.write(data)
    else:
        with open(filename, "w", encoding="ascii") as file_:
            file_.write(data)


def read_records(filename: str, cls: type[_Record]) -> list[_Record]:
    "Read a json list (or a single json object) of records."

    with open(filename, "r", encoding="ascii") as file_:
        try:
            data: Any = json.load(file_)
        except json.JSONDecodeError as e:
            raise MalformedRecordError(f"invalid json file: {filename}") from e
    if isinstance(data, dict):
        data = [data]
    try:
        return [cls.from_dict(dict_) for dict_ in data]
    except KeyProofValueError:
        raise
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise MalformedRecordError(f"invalid record in {filename}: {e}") from e


def assert_consistent(records: Sequence[UnsignedProofRecord]) -> None:
    "Raise MalformedRecordError if unsigned records are not of the same proof."

    if not records:
        raise MalformedRecordError("no unsigned proof record")
    first = records[0]
    for record in records[1:]:
        if record.tx != first.tx:
            raise MalformedRecordError(f"transaction mismatch at {record.path}")
        if record.script_sigs != first.script_sigs:
            raise MalformedRecordError(f"witness script mismatch at {record.path}")
        if record.vin_values != first.vin_values:
            raise MalformedRecordError(f"amount mismatch at {record.path}")
    paths = [record.path for record in records]
    if len(set(paths)) != len(paths):
        raise MalformedRecordError("duplicated signer slot")


def slots_from_records(
    threshold_script: ThresholdScript, records: Iterable[PublicKeyRecord]
) -> SignerSlots:
    "Return the signer slots of the script from public key records."

    return SignerSlots(
        threshold_script,
        {r.path: r.pub_key for r in records if r.pub_key in threshold_script.pub_keys},
    )
