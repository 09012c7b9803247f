#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Command line interface of a key-possession proof session.

    keyproof gen             derive the signer keys and the P2WSH address
    keyproof create-unsigned build the challenge-bound proof transaction
    keyproof sign            sign it with the available private keys
    keyproof assemble        assemble the partial signatures
    keyproof verify          verify the signed proof transaction

Results go to stdout, diagnostics to stderr;
any failure halts the command with exit status 1.
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import secrets
import sys
from os import path
from typing import Sequence

from btclib.exceptions import BTClibValueError
from btclib.mnemonic import bip39

from keyproof import __version__
from keyproof.challenge import proof_transaction
from keyproof.der_path import path_from_template
from keyproof.exceptions import (
    AddressMismatchError,
    InvalidSeedError,
    KeyProofValueError,
    MalformedRecordError,
)
from keyproof.hd_keys import derive
from keyproof.params import ProtocolParams, get_params, params_from_file
from keyproof.records import (
    PartialSignatureRecord,
    PrivateKeyRecord,
    PublicKeyRecord,
    UnsignedProofRecord,
    assert_consistent,
    read_records,
    slots_from_records,
    write_records,
)
from keyproof.signing import (
    SignatureCollector,
    SignerSlots,
    finalize,
    sign_with_wif,
)
from keyproof.threshold import build_script, derive_address
from keyproof.verify import tx_from_encoded, verify_signed_tx

_log = logging.getLogger("keyproof")

DEFAULT_PATH_TEMPLATE = "m/84h/0h/0h/0/i"


def _params(args: argparse.Namespace) -> ProtocolParams:
    if args.params:
        return params_from_file(args.params)
    return get_params(args.protocol)


def _seed(args: argparse.Namespace) -> bytes:

    if args.hex_seed and args.mnemonic:
        raise InvalidSeedError("cannot specify both --hex-seed and --mnemonic")
    if args.mnemonic:
        try:
            return bip39.seed_from_mnemonic(args.mnemonic, args.passphrase)
        except (BTClibValueError, ValueError) as e:
            raise InvalidSeedError("invalid mnemonic phrase") from e
    if args.hex_seed:
        try:
            return bytes.fromhex(args.hex_seed)
        except ValueError as e:
            raise InvalidSeedError("invalid hex seed") from e
    _log.info("generating random seed")
    return secrets.token_bytes(32)


def gen(args: argparse.Namespace) -> None:
    params = _params(args)
    seed = _seed(args)

    key_pairs = [
        derive(seed, path_from_template(args.path, i), params.network)
        for i in range(args.n)
    ]
    threshold_script = build_script([kp.pub_key for kp in key_pairs], args.m)
    address = derive_address(threshold_script, params.network)

    xpubs_file = path.join(args.output_dir, "xpubs.json")
    privkeys_file = path.join(args.output_dir, "privkeys.json")
    write_records(xpubs_file, [PublicKeyRecord.from_key_pair(kp) for kp in key_pairs])
    write_records(
        privkeys_file,
        [PrivateKeyRecord.from_key_pair(kp) for kp in key_pairs],
        private=True,
    )

    script_ = threshold_script.script
    print(f"Derived xpub: {key_pairs[0].root_xpub}")
    print(f"Threshold: {args.m}-of-{args.n}")
    print(f"P2WSH Address: {address}")
    print(f"Witness Script (hex): {script_.hex()}")
    print(f"Witness Script (base64): {base64.b64encode(script_).decode('ascii')}")
    _log.info("public metadata saved to: %s", xpubs_file)
    _log.info("private keys saved to: %s", privkeys_file)


def create_unsigned(args: argparse.Namespace) -> None:
    params = _params(args)

    public_records = read_records(args.xpubs, PublicKeyRecord)
    threshold_script = build_script([r.pub_key for r in public_records], args.m)
    address = derive_address(threshold_script, params.network)
    if address != args.address:
        err_msg = f"address mismatch: derived {address} instead of {args.address}"
        raise AddressMismatchError(err_msg)
    print("Address verification successful")

    tx = proof_transaction(args.hex, address, params)
    print(f"Unsigned TX (hex): {tx.serialize(include_witness=False).hex()}")
    print(f"Witness Script (hex): {threshold_script.script.hex()}")

    for i, public_record in enumerate(public_records):
        record = UnsignedProofRecord.from_proof(
            public_record.path, tx, threshold_script, params
        )
        filename = path.join(args.output_dir, f"unsigned-tx{i}.json")
        write_records(filename, record)
        print(f"tx written to: {filename}")


def _unsigned_records(filenames: Sequence[str]) -> list[UnsignedProofRecord]:
    records = [r for f in filenames for r in read_records(f, UnsignedProofRecord)]
    assert_consistent(records)
    return records


def sign(args: argparse.Namespace) -> None:
    params = _params(args)

    unsigned_records = _unsigned_records(args.tx)
    first = unsigned_records[0]
    if first.amount != params.amount:
        err_msg = f"amount mismatch: {first.amount} instead of {params.amount}"
        raise MalformedRecordError(err_msg)
    threshold_script = first.threshold_script
    if derive_address(threshold_script, params.network) != args.address:
        raise AddressMismatchError(f"witness script not of {args.address}")
    tx = first.proof_tx

    private_records = read_records(args.privkeys, PrivateKeyRecord)
    wifs = {r.path: r.derived_priv for r in private_records}
    partial_signatures = [
        sign_with_wif(tx, threshold_script, wifs[r.path], r.path, params)
        for r in unsigned_records
        if r.path in wifs
    ]
    _log.info("%d signatures", len(partial_signatures))

    if not args.assemble:
        signature_records = [
            PartialSignatureRecord.from_partial_signature(s).to_dict()
            for s in partial_signatures
        ]
        print(json.dumps(signature_records, indent=2))
        return

    slots = SignerSlots(
        threshold_script,
        {
            kp.path: kp.pub_key
            for kp in (r.key_pair() for r in private_records)
            if kp.pub_key in threshold_script.pub_keys
        },
    )
    collector = SignatureCollector(slots)
    for partial_signature in partial_signatures:
        if collector.is_complete():
            break
        collector.add(partial_signature)
    signed_tx = finalize(tx, collector.assemble())
    print(f"Signed TX (hex): {signed_tx.serialize(include_witness=True).hex()}")


def assemble(args: argparse.Namespace) -> None:
    unsigned_records = _unsigned_records(args.tx)
    threshold_script = unsigned_records[0].threshold_script

    public_records = read_records(args.xpubs, PublicKeyRecord)
    slots = slots_from_records(threshold_script, public_records)
    collector = SignatureCollector(slots)
    for filename in args.signatures:
        for record in read_records(filename, PartialSignatureRecord):
            collector.add(record.to_partial_signature())
    if not collector.is_complete():
        raise MalformedRecordError(f"missing {collector.missing} signatures")

    signed_tx = finalize(unsigned_records[0].proof_tx, collector.assemble())
    print(f"Signed TX (hex): {signed_tx.serialize(include_witness=True).hex()}")


def verify(args: argparse.Namespace) -> None:
    params = _params(args)

    tx = tx_from_encoded(args.tx)
    print("Witness stack:")
    if tx.vin:
        for i, element in enumerate(tx.vin[0].script_witness.stack):
            print(f"  [{i}] {element.hex()} (len={len(element)})")

    pub_keys = None
    if args.xpubs:
        pub_keys = [r.pub_key for r in read_records(args.xpubs, PublicKeyRecord)]
    verify_signed_tx(tx, args.hex, args.address, pub_keys, args.m, params)
    print("Witness verification succeeded")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyproof",
        description="Prove possession of an m-of-n threshold of BIP32 keys.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument(
        "--protocol", type=int, default=1, help="protocol version (default: 1)"
    )
    parser.add_argument("--params", help="json file of custom protocol parameters")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_gen = subparsers.add_parser("gen", help="derive keys and address")
    p_gen.add_argument("--hex-seed", help="BIP32 seed in hex (default: random)")
    p_gen.add_argument("--mnemonic", help="BIP39 mnemonic phrase to import")
    p_gen.add_argument("--passphrase", default="", help="BIP39 passphrase")
    p_gen.add_argument(
        "--path",
        default=DEFAULT_PATH_TEMPLATE,
        help=f"path template with key index i (default: {DEFAULT_PATH_TEMPLATE})",
    )
    p_gen.add_argument("-n", type=int, default=3, help="number of keys (default: 3)")
    p_gen.add_argument("-m", type=int, default=2, help="threshold (default: 2)")
    p_gen.add_argument("--output-dir", default=".")
    p_gen.set_defaults(func=gen)

    p_unsigned = subparsers.add_parser(
        "create-unsigned", help="build the unsigned proof transaction"
    )
    p_unsigned.add_argument("--address", required=True, help="P2WSH address")
    p_unsigned.add_argument("--hex", required=True, help="32 bytes hex challenge")
    p_unsigned.add_argument("--xpubs", required=True, help="xpubs.json file")
    p_unsigned.add_argument("-m", type=int, default=2, help="threshold (default: 2)")
    p_unsigned.add_argument("--output-dir", default=".")
    p_unsigned.set_defaults(func=create_unsigned)

    p_sign = subparsers.add_parser("sign", help="sign the proof transaction")
    p_sign.add_argument("--address", required=True, help="P2WSH address")
    p_sign.add_argument(
        "--tx", required=True, nargs="+", help="unsigned-tx json file(s)"
    )
    p_sign.add_argument("--privkeys", required=True, help="privkeys.json file")
    p_sign.add_argument(
        "--assemble", action="store_true", help="print the signed transaction"
    )
    p_sign.set_defaults(func=sign)

    p_assemble = subparsers.add_parser("assemble", help="assemble signatures")
    p_assemble.add_argument(
        "--tx", required=True, nargs="+", help="unsigned-tx json file(s)"
    )
    p_assemble.add_argument("--xpubs", required=True, help="xpubs.json file")
    p_assemble.add_argument(
        "--signatures", required=True, nargs="+", help="partial signature json file(s)"
    )
    p_assemble.set_defaults(func=assemble)

    p_verify = subparsers.add_parser("verify", help="verify the signed transaction")
    p_verify.add_argument("--tx", required=True, help="signed transaction hex")
    p_verify.add_argument("--hex", required=True, help="32 bytes hex challenge")
    p_verify.add_argument("--address", required=True, help="P2WSH address")
    p_verify.add_argument("--xpubs", help="xpubs.json file (default: witness keys)")
    p_verify.add_argument("-m", type=int, help="threshold (default: witness one)")
    p_verify.set_defaults(func=verify)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        args.func(args)
    except KeyProofValueError as e:
        _log.error("%s: %s", type(e).__name__, e)
        return 1
    except OSError as e:
        _log.error("%s", e)
        return 1
    return 0
