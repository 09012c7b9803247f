#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"Tests for the `keyproof.cli` module."

import json
import os
import stat
from pathlib import Path

import pytest

from keyproof.cli import main
from keyproof.hd_keys import derive
from keyproof.params import DEFAULT_PROTOCOL
from keyproof.threshold import build_script, derive_address
from keyproof.verify import verify_signed_tx

SEED = "000102030405060708090a0b0c0d0e0f"
CHALLENGE = "ab" * 32
MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


def _value(out: str, label: str) -> str:
    for line in out.splitlines():
        if line.startswith(label):
            return line[len(label) :].strip()
    raise AssertionError(f"missing '{label}' in output")


def _gen(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> str:
    argv = ["gen", "--hex-seed", SEED, "-n", "3", "-m", "2"]
    assert main(argv + ["--output-dir", str(tmp_path)]) == 0
    return _value(capsys.readouterr().out, "P2WSH Address:")


def _create_unsigned(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], address: str
) -> None:
    argv = ["create-unsigned", "--address", address, "--hex", CHALLENGE]
    argv += ["--xpubs", str(tmp_path / "xpubs.json"), "-m", "2"]
    assert main(argv + ["--output-dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "Address verification successful" in out


def test_gen(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:

    argv = ["gen", "--hex-seed", SEED, "--output-dir", str(tmp_path)]
    assert main(argv) == 0
    out = capsys.readouterr().out

    key_pairs = [derive(SEED, f"m/84h/0h/0h/0/{i}") for i in range(3)]
    threshold_script = build_script([kp.pub_key for kp in key_pairs], 2)
    assert _value(out, "Derived xpub:") == key_pairs[0].root_xpub
    assert _value(out, "Threshold:") == "2-of-3"
    assert _value(out, "P2WSH Address:") == derive_address(threshold_script)
    assert _value(out, "Witness Script (hex):") == threshold_script.script.hex()

    with open(tmp_path / "xpubs.json", "r", encoding="ascii") as file_:
        xpubs = json.load(file_)
    assert [r["path"] for r in xpubs] == [kp.path for kp in key_pairs]
    assert [r["pubkey"] for r in xpubs] == [kp.pub_key.hex() for kp in key_pairs]
    assert all("xpriv" not in r for r in xpubs)

    privkeys_file = tmp_path / "privkeys.json"
    assert stat.S_IMODE(os.stat(privkeys_file).st_mode) == 0o600
    with open(privkeys_file, "r", encoding="ascii") as file_:
        privkeys = json.load(file_)
    assert [r["derived_priv"] for r in privkeys] == [kp.wif for kp in key_pairs]


def test_gen_options(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:

    # random seed
    assert main(["gen", "-n", "2", "-m", "1", "--output-dir", str(tmp_path)]) == 0
    assert _value(capsys.readouterr().out, "Threshold:") == "1-of-2"

    argv = ["gen", "--mnemonic", MNEMONIC, "--path", "m/48h/0h/0h/2h/i"]
    assert main(argv + ["--output-dir", str(tmp_path)]) == 0
    assert _value(capsys.readouterr().out, "P2WSH Address:").startswith("bc1q")

    params_file = tmp_path / "testnet.json"
    dict_ = dict(DEFAULT_PROTOCOL.to_dict(), network="testnet")
    params_file.write_text(json.dumps(dict_), encoding="ascii")
    argv = ["--params", str(params_file), "gen", "--hex-seed", SEED]
    assert main(argv + ["--output-dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert _value(out, "P2WSH Address:").startswith("tb1q")
    assert _value(out, "Derived xpub:").startswith("tpub")


def test_gen_errors(tmp_path: Path) -> None:

    output_dir = ["--output-dir", str(tmp_path)]
    argv = ["gen", "--hex-seed", SEED, "--mnemonic", MNEMONIC]
    assert main(argv + output_dir) == 1
    assert main(["gen", "--hex-seed", "not hex"] + output_dir) == 1
    assert main(["gen", "--hex-seed", SEED[:-2]] + output_dir) == 1
    assert main(["gen", "--mnemonic", "abandon about"] + output_dir) == 1
    assert main(["gen", "--hex-seed", SEED, "-m", "4"] + output_dir) == 1
    assert main(["gen", "--hex-seed", SEED, "--path", "m/84h/0"] + output_dir) == 1
    assert main(["--protocol", "2", "gen", "--hex-seed", SEED] + output_dir) == 1
    missing_dir = ["--output-dir", str(tmp_path / "missing")]
    assert main(["gen", "--hex-seed", SEED] + missing_dir) == 1


def test_session(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:

    address = _gen(tmp_path, capsys)
    _create_unsigned(tmp_path, capsys, address)
    unsigned = [str(tmp_path / f"unsigned-tx{i}.json") for i in range(3)]
    for filename in unsigned:
        with open(filename, "r", encoding="ascii") as file_:
            assert isinstance(json.load(file_), dict)

    argv = ["sign", "--address", address, "--tx", unsigned[2], unsigned[0]]
    argv += ["--privkeys", str(tmp_path / "privkeys.json"), "--assemble"]
    assert main(argv) == 0
    signed_tx = _value(capsys.readouterr().out, "Signed TX (hex):")
    verify_signed_tx(signed_tx, CHALLENGE, address)

    argv = ["verify", "--tx", signed_tx, "--hex", CHALLENGE, "--address", address]
    assert main(argv) == 0
    out = capsys.readouterr().out
    assert "Witness stack:" in out
    assert "Witness verification succeeded" in out

    argv = ["verify", "--tx", signed_tx, "--hex", CHALLENGE, "--address", address]
    argv += ["--xpubs", str(tmp_path / "xpubs.json"), "-m", "2"]
    assert main(argv) == 0
    assert "Witness verification succeeded" in capsys.readouterr().out

    # all the three keys, only two signatures
    argv = ["sign", "--address", address, "--tx", *unsigned]
    argv += ["--privkeys", str(tmp_path / "privkeys.json"), "--assemble"]
    assert main(argv) == 0
    signed_tx = _value(capsys.readouterr().out, "Signed TX (hex):")
    verify_signed_tx(signed_tx, CHALLENGE, address)


def test_verify_failures(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:

    address = _gen(tmp_path, capsys)
    _create_unsigned(tmp_path, capsys, address)
    unsigned = [str(tmp_path / f"unsigned-tx{i}.json") for i in range(2)]
    argv = ["sign", "--address", address, "--tx", *unsigned]
    argv += ["--privkeys", str(tmp_path / "privkeys.json"), "--assemble"]
    assert main(argv) == 0
    signed_tx = _value(capsys.readouterr().out, "Signed TX (hex):")

    # another challenge
    argv = ["verify", "--tx", signed_tx, "--hex", "cd" * 32, "--address", address]
    assert main(argv) == 1
    assert "Witness verification succeeded" not in capsys.readouterr().out

    # another address
    other_address = derive_address(build_script([derive(SEED, "m/0").pub_key], 1))
    argv = ["verify", "--tx", signed_tx, "--hex", CHALLENGE]
    assert main(argv + ["--address", other_address]) == 1

    # another threshold
    argv = ["verify", "--tx", signed_tx, "--hex", CHALLENGE, "--address", address]
    assert main(argv + ["-m", "3"]) == 1

    argv = ["verify", "--tx", "not a tx!", "--hex", CHALLENGE, "--address", address]
    assert main(argv) == 1


def test_create_unsigned_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:

    address = _gen(tmp_path, capsys)
    xpubs = str(tmp_path / "xpubs.json")

    argv = ["create-unsigned", "--hex", CHALLENGE, "--xpubs", xpubs]
    argv += ["--output-dir", str(tmp_path)]
    # threshold not matching the address
    assert main(argv + ["--address", address, "-m", "3"]) == 1
    assert "Address verification successful" not in capsys.readouterr().out
    assert not (tmp_path / "unsigned-tx0.json").exists()

    assert main(argv + ["--address", "bc1qnotanaddress", "-m", "2"]) == 1

    argv = ["create-unsigned", "--address", address, "--hex", "ab" * 31]
    argv += ["--xpubs", xpubs, "--output-dir", str(tmp_path)]
    assert main(argv) == 1

    argv = ["create-unsigned", "--address", address, "--hex", CHALLENGE]
    argv += ["--xpubs", str(tmp_path / "missing.json"), "--output-dir", str(tmp_path)]
    assert main(argv) == 1


def test_sign_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:

    address = _gen(tmp_path, capsys)
    _create_unsigned(tmp_path, capsys, address)
    unsigned = [str(tmp_path / f"unsigned-tx{i}.json") for i in range(3)]
    privkeys = str(tmp_path / "privkeys.json")

    # address not of the witness script
    other_address = derive_address(build_script([derive(SEED, "m/0").pub_key], 1))
    argv = ["sign", "--address", other_address, "--tx", *unsigned]
    assert main(argv + ["--privkeys", privkeys]) == 1

    # not enough signatures for the threshold
    argv = ["sign", "--address", address, "--tx", unsigned[0]]
    assert main(argv + ["--privkeys", privkeys, "--assemble"]) == 1
    assert "Signed TX" not in capsys.readouterr().out

    # the same signer slot twice
    argv = ["sign", "--address", address, "--tx", unsigned[0], unsigned[0]]
    assert main(argv + ["--privkeys", privkeys]) == 1

    # the nominal amount is part of the protocol
    params_file = tmp_path / "params.json"
    dict_ = dict(DEFAULT_PROTOCOL.to_dict(), amount=2000)
    params_file.write_text(json.dumps(dict_), encoding="ascii")
    argv = ["--params", str(params_file), "sign", "--address", address]
    assert main(argv + ["--tx", *unsigned, "--privkeys", privkeys]) == 1


def test_distributed_signing(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:

    address = _gen(tmp_path, capsys)
    _create_unsigned(tmp_path, capsys, address)
    privkeys = str(tmp_path / "privkeys.json")

    # each key holder signs its own unsigned transaction
    signature_files = []
    for i in (2, 1):
        unsigned = str(tmp_path / f"unsigned-tx{i}.json")
        argv = ["sign", "--address", address, "--tx", unsigned]
        assert main(argv + ["--privkeys", privkeys]) == 0
        records = json.loads(capsys.readouterr().out)
        assert len(records) == 1
        assert records[0]["path"] == f"m/84h/0h/0h/0/{i}"
        signature_file = tmp_path / f"signature{i}.json"
        signature_file.write_text(json.dumps(records), encoding="ascii")
        signature_files.append(str(signature_file))

    unsigned = [str(tmp_path / f"unsigned-tx{i}.json") for i in range(3)]
    argv = ["assemble", "--tx", *unsigned, "--xpubs", str(tmp_path / "xpubs.json")]
    assert main(argv + ["--signatures", *signature_files]) == 0
    signed_tx = _value(capsys.readouterr().out, "Signed TX (hex):")
    verify_signed_tx(signed_tx, CHALLENGE, address)

    # a single signature is not enough
    assert main(argv + ["--signatures", signature_files[0]]) == 1
    # a signature cannot be counted twice
    argv += ["--signatures", signature_files[0], signature_files[0]]
    assert main(argv) == 1
