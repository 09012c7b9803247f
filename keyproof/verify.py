#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Verification of a key-possession proof.

Verification is all-or-nothing, the checks being performed in order:

1. the threshold script of the declared public keys and threshold
   must have the declared address (AddressMismatchError);
2. the transaction input must spend the synthetic reference bound to the
   challenge (ChallengeMismatchError);
3. the last witness element must be the threshold script
   (ScriptMismatchError);
4. the btclib script engine must execute the witness against the
   P2WSH prevout of nominal amount (ScriptExecutionError).

The first failing check raises; no failure is ever downgraded.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Sequence

from btclib.script.engine import ALL_FLAGS, verify_input
from btclib.tx import Tx, TxOut

from keyproof.challenge import bind_challenge
from keyproof.exceptions import (
    AddressMismatchError,
    ChallengeMismatchError,
    KeyProofValueError,
    MalformedRecordError,
    ScriptExecutionError,
    ScriptMismatchError,
    VerificationError,
)
from keyproof.params import DEFAULT_PROTOCOL, ProtocolParams
from keyproof.threshold import (
    build_script,
    derive_address,
    parse_script,
    script_pub_key_from_address,
)

_log = logging.getLogger(__name__)


def tx_from_encoded(signed_tx: Tx | bytes | str) -> Tx:
    "Return the transaction encoded as bytes, hex string, or base64 string."

    if isinstance(signed_tx, Tx):
        return signed_tx
    if isinstance(signed_tx, str):
        signed_tx = signed_tx.strip()
        try:
            signed_tx = bytes.fromhex(signed_tx)
        except ValueError:
            try:
                signed_tx = base64.b64decode(signed_tx, validate=True)
            except binascii.Error as e:
                raise MalformedRecordError("invalid transaction encoding") from e
    try:
        tx = Tx.parse(signed_tx)
    except (ValueError, RuntimeError, IndexError) as e:
        raise MalformedRecordError(f"invalid transaction: {e}") from e
    # parsing ignores trailing data and a truncated lock_time
    if tx.serialize(include_witness=True) != signed_tx:
        raise MalformedRecordError("invalid transaction: non-canonical serialization")
    return tx


def verify(
    tx: Tx,
    address: str,
    pub_keys: Sequence[bytes | str],
    m: int,
    challenge: bytes | str,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> None:
    "Raise the VerificationError of the first failing check."

    threshold_script = build_script(pub_keys, m)
    script_ = threshold_script.script

    # 1. address
    expected_address = derive_address(threshold_script, params.network)
    address = address.strip()
    # bech32 is either all lowercase or all uppercase
    if address not in (address.lower(), address.upper()):
        raise AddressMismatchError(f"mixed-case address: {address}")
    if expected_address != address.lower():
        err_msg = f"address mismatch: {address} instead of {expected_address}"
        raise AddressMismatchError(err_msg)
    _log.debug("address verified: %s", expected_address)

    # 2. challenge
    reference = bind_challenge(challenge, params)
    if len(tx.vin) != 1:
        raise ChallengeMismatchError(f"not a single input tx: {len(tx.vin)} inputs")
    if tx.vin[0].prev_out != reference:
        raise ChallengeMismatchError("prevout not bound to the challenge")
    _log.debug("challenge verified: %s", reference.tx_id.hex())

    # 3. witness script
    stack = tx.vin[0].script_witness.stack
    if not stack:
        raise ScriptMismatchError("empty witness")
    if stack[-1] != script_:
        raise ScriptMismatchError("witness script mismatch")

    # 4. script execution
    prevout = TxOut(params.amount, script_pub_key_from_address(expected_address))
    try:
        verify_input([prevout], tx, 0, list(ALL_FLAGS))
    except (ValueError, RuntimeError, IndexError) as e:
        diagnostic = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
        err_msg = f"script execution failed ({diagnostic})"
        raise ScriptExecutionError(err_msg, diagnostic) from e
    _log.debug("script execution verified")


def verify_signed_tx(
    signed_tx: Tx | bytes | str,
    challenge: bytes | str,
    address: str,
    pub_keys: Sequence[bytes | str] | None = None,
    m: int | None = None,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> None:
    """Verify an encoded signed proof transaction.

    Public keys and threshold, when not provided,
    are taken from the witness script embedded in the transaction.
    """

    tx = tx_from_encoded(signed_tx)
    if pub_keys is None or m is None:
        if len(tx.vin) != 1 or not tx.vin[0].script_witness.stack:
            raise ScriptMismatchError("missing witness script")
        embedded = parse_script(tx.vin[0].script_witness.stack[-1])
        if pub_keys is None:
            pub_keys = embedded.pub_keys
        if m is None:
            m = embedded.m
    verify(tx, address, pub_keys, m, challenge, params)


def check(
    signed_tx: Tx | bytes | str,
    challenge: bytes | str,
    address: str,
    pub_keys: Sequence[bytes | str] | None = None,
    m: int | None = None,
    params: ProtocolParams = DEFAULT_PROTOCOL,
) -> tuple[bool, str]:
    "Return (True, '') for a valid proof, else (False, diagnostic)."

    try:
        verify_signed_tx(signed_tx, challenge, address, pub_keys, m, params)
    except VerificationError as e:
        return False, f"{e.check} check failed: {e}"
    except KeyProofValueError as e:
        return False, f"invalid input: {e}"
    return True, ""
