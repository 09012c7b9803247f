#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Challenge-bound proof transaction.

The verifier's 32-byte challenge is bound into the transaction as the
prior output it spends:

    tx_id = sha256(prevout_prefix || challenge)

The domain-separation prefix makes the reference a value that cannot
collide with the id of a real transaction,
hence the proof transaction can never be broadcast as a value transfer.
The digest is the serialized (internal byte order) transaction id:
btclib OutPoint stores the displayed (reversed) order,
so the digest is reversed before building the OutPoint.
"""

from __future__ import annotations

from btclib.exceptions import BTClibValueError
from btclib.hashes import sha256
from btclib.script.witness import Witness
from btclib.tx import OutPoint, Tx, TxIn, TxOut
from btclib.utils import bytes_from_octets

from keyproof.exceptions import InvalidChallengeError, KeyProofValueError
from keyproof.params import DEFAULT_PROTOCOL, ProtocolParams
from keyproof.threshold import script_pub_key_from_address

CHALLENGE_SIZE = 32


def bind_challenge(
    challenge: bytes | str, params: ProtocolParams = DEFAULT_PROTOCOL
) -> OutPoint:
    "Return the synthetic prior output reference bound to a challenge."

    try:
        challenge = bytes_from_octets(challenge)
    except (BTClibValueError, ValueError) as e:
        raise InvalidChallengeError(f"invalid challenge: {challenge!r}") from e
    if len(challenge) != CHALLENGE_SIZE:
        err_msg = f"invalid challenge size: {len(challenge)} bytes"
        err_msg += f" instead of {CHALLENGE_SIZE}"
        raise InvalidChallengeError(err_msg)

    digest = sha256(params.prevout_prefix + challenge)
    return OutPoint(digest[::-1], params.vout)


def build_proof_transaction(
    reference: OutPoint, address: str, params: ProtocolParams = DEFAULT_PROTOCOL
) -> Tx:
    """Return the unsigned proof transaction.

    It has a single input spending the synthetic reference,
    with empty script_sig and witness,
    and a single output paying the nominal amount to the address.
    """

    script_pub_key = script_pub_key_from_address(address)
    tx_in = TxIn(reference, b"", params.sequence, Witness())
    tx_out = TxOut(params.amount, script_pub_key)
    try:
        return Tx(params.tx_version, 0, [tx_in], [tx_out])
    except BTClibValueError as e:
        raise KeyProofValueError(f"invalid proof transaction: {e}") from e


def proof_transaction(
    challenge: bytes | str, address: str, params: ProtocolParams = DEFAULT_PROTOCOL
) -> Tx:
    "Return the unsigned proof transaction bound to a challenge."

    reference = bind_challenge(challenge, params)
    return build_proof_transaction(reference, address, params)


def prev_out_of(tx: Tx) -> OutPoint:
    "Return the prior output reference spent by a proof transaction."

    if len(tx.vin) != 1 or len(tx.vout) != 1:
        err_msg = f"not a proof transaction: {len(tx.vin)} inputs"
        err_msg += f" and {len(tx.vout)} outputs"
        raise KeyProofValueError(err_msg)
    return tx.vin[0].prev_out
