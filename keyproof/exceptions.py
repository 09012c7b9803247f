#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""Exception classes.

Every keyproof exception derives from KeyProofValueError,
itself a regular ValueError, so that users can either
discriminate the failing check or just deal with ValueError.

The classes are grouped as:

- input validation: malformed path, seed, key, threshold, challenge,
  address, or data-interchange record;
- derivation edge cases: a degenerate child key (retry with another index);
- matching failures: signatures that cannot be resolved to a signer slot
  or that do not add up to the threshold;
- verification failures: one subclass of VerificationError per check.
"""

from __future__ import annotations


class KeyProofValueError(ValueError):
    pass


class MalformedPathError(KeyProofValueError):
    pass


class InvalidSeedError(KeyProofValueError):
    pass


class InvalidChildError(KeyProofValueError):
    "Degenerate child key: the caller may retry with an adjusted index."

    def __init__(self, msg: str, index: int, depth: int) -> None:
        super().__init__(msg)
        self.index = index
        self.depth = depth


class InvalidKeyError(KeyProofValueError):
    pass


class InvalidThresholdError(KeyProofValueError):
    pass


class InvalidChallengeError(KeyProofValueError):
    pass


class InvalidAddressError(KeyProofValueError):
    pass


class MalformedRecordError(KeyProofValueError):
    pass


class UnresolvedSignerError(KeyProofValueError):
    def __init__(self, msg: str, path: str) -> None:
        super().__init__(msg)
        self.path = path


class MalformedWitnessError(KeyProofValueError):
    pass


class VerificationError(KeyProofValueError):
    "Base class of the all-or-nothing verification failures."

    check = "verification"


class AddressMismatchError(VerificationError):
    check = "address"


class ChallengeMismatchError(VerificationError):
    check = "challenge"


class ScriptMismatchError(VerificationError):
    check = "script"


class ScriptExecutionError(VerificationError):
    check = "execution"

    def __init__(self, msg: str, diagnostic: str = "") -> None:
        super().__init__(msg)
        self.diagnostic = diagnostic
