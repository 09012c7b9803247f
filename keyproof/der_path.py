#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Derivation paths of the signer keys.

A derivation path can be represented as:

- "m/84h/0'/0H/0/1" or "84h/0'/0H/0/1" string
- sequence of integer indexes (even a single int)

Unlike BIP32 wallet software, which is usually lenient,
text paths are parsed strictly: an empty path,
an empty segment (e.g. "0//1"), or a non-numeric segment
are rejected with MalformedPathError.
Signer slots are keyed by the canonical string form,
so that "m/0'/1" and "0h/1" resolve to the same slot.
"""

from __future__ import annotations

import re
from typing import Sequence, Union

from keyproof.exceptions import MalformedPathError

# default hardening symbol among the possible ones: "h", "H", "'"
_HARDENING = "h"
_HARDENED = 0x80000000
_SEGMENT = re.compile(r"^([0-9]+)(['hH]?)$")

DerPath = Union[str, Sequence[int], int]


def int_from_index_str(s: str) -> int:

    match = _SEGMENT.match(s.strip())
    if match is None:
        raise MalformedPathError(f"invalid path segment: {s!r}")
    index = int(match.group(1))
    if not 0 <= index < _HARDENED:
        raise MalformedPathError(f"invalid index: {index}")
    return index + (_HARDENED if match.group(2) else 0)


def str_from_index_int(i: int, hardening: str = _HARDENING) -> str:

    if hardening not in ("'", "h", "H"):
        raise MalformedPathError(f"invalid hardening symbol: {hardening}")
    if not 0 <= i <= 0xFFFFFFFF:
        raise MalformedPathError(f"invalid index: {i}")
    if i < _HARDENED:
        return str(i)
    return str(i - _HARDENED) + hardening


def _indexes_from_path_str(der_path: str) -> list[int]:

    steps = der_path.strip().split("/")
    if steps[0].strip() in ("m", "M"):
        steps = steps[1:]
    if not steps or steps == [""]:
        raise MalformedPathError(f"empty derivation path: {der_path!r}")
    if any(s.strip() == "" for s in steps):
        raise MalformedPathError(f"empty path segment: {der_path!r}")

    indexes = [int_from_index_str(s) for s in steps]

    if len(indexes) > 255:
        raise MalformedPathError(f"depth greater than 255: {len(indexes)}")
    return indexes


def indexes_from_path(der_path: DerPath) -> list[int]:

    if isinstance(der_path, str):
        return _indexes_from_path_str(der_path)

    if isinstance(der_path, int):
        der_path = [der_path]

    indexes = list(der_path)
    if not indexes:
        raise MalformedPathError("empty derivation path")
    for i in indexes:
        if not isinstance(i, int) or not 0 <= i <= 0xFFFFFFFF:
            raise MalformedPathError(f"invalid index: {i!r}")
    if len(indexes) > 255:
        raise MalformedPathError(f"depth greater than 255: {len(indexes)}")
    return indexes


def str_from_path(der_path: DerPath, hardening: str = _HARDENING) -> str:
    "Return the canonical 'm/...' string of a derivation path."

    indexes = indexes_from_path(der_path)
    return "m/" + "/".join(str_from_index_int(i, hardening) for i in indexes)


def is_hardened(der_path: DerPath) -> bool:
    "Return True if any step of the path requires the private key."
    return any(i >= _HARDENED for i in indexes_from_path(der_path))


def path_from_template(template: str, i: int) -> str:
    """Return the path of the i-th key from a path template.

    The template uses 'i' as key index placeholder,
    e.g. "m/84h/0h/0h/0/i".
    """

    if i < 0:
        raise MalformedPathError(f"invalid key index: {i}")
    steps = template.strip().split("/")
    if "i" not in (s.strip() for s in steps):
        raise MalformedPathError(f"missing 'i' placeholder: {template!r}")
    der_path = "/".join(str(i) if s.strip() == "i" else s for s in steps)
    # validate and normalize
    return str_from_path(der_path)
