#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"""BIP32 derivation of the signer keys.

Each signer key is derived from a single seed along its own derivation path,
according to the BIP32 bitcoin standard
https://github.com/bitcoin/bips/blob/master/bip-0032.mediawiki.

Serialization of the extended keys is delegated to btclib BIP32KeyData;
child key derivation is performed here because the rare degenerate cases
(IL not lower than the curve order, zero child private key,
child public key at infinity) must not go unnoticed:
they raise InvalidChildError carrying the failing index and depth,
so that the caller can proceed with the next index, as BIP32 prescribes.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from btclib.b58 import wif_from_prv_key
from btclib.bip32 import BIP32KeyData
from btclib.ec import bytes_from_point, mult, point_from_octets, secp256k1
from btclib.exceptions import BTClibValueError
from btclib.hashes import hash160
from btclib.network import NETWORKS
from btclib.utils import bytes_from_octets

from keyproof.der_path import DerPath, indexes_from_path, str_from_path
from keyproof.exceptions import InvalidChildError, InvalidKeyError, InvalidSeedError

ec = secp256k1

_HARDENED = 0x80000000


def _hmac_sha512(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, "sha512").digest()


def _network_from_version(version: bytes) -> str:

    for name, network in NETWORKS.items():
        if version in (network.bip32_prv, network.bip32_pub):
            return name
    raise InvalidKeyError(f"unknown extended key version: 0x{version.hex()}")


def rootxprv_from_seed(seed: bytes | str, network: str = "mainnet") -> BIP32KeyData:
    """Return the BIP32 root master extended private key from seed.

    The seed must be 128 to 512 bits long.
    """

    seed = bytes_from_octets(seed)
    bitlength = len(seed) * 8
    if not 128 <= bitlength <= 512:
        raise InvalidSeedError(f"invalid seed size: {bitlength} bits")
    if network not in NETWORKS:
        raise InvalidKeyError(f"unknown network: {network}")

    hmac_ = _hmac_sha512(b"Bitcoin seed", seed)
    q = int.from_bytes(hmac_[:32], byteorder="big", signed=False)
    if not 0 < q < ec.n:
        raise InvalidSeedError("invalid master key from seed, use another seed")

    return BIP32KeyData(
        version=NETWORKS[network].bip32_prv,
        depth=0,
        parent_fingerprint=b"\x00" * 4,
        index=0,
        chain_code=hmac_[32:],
        key=b"\x00" + hmac_[:32],
    )


def _ckd_prv(xkey: BIP32KeyData, index: int) -> BIP32KeyData:
    "Private parent key to private child key."

    q = int.from_bytes(xkey.key[1:], byteorder="big", signed=False)
    Q_bytes = bytes_from_point(mult(q))
    index_bytes = index.to_bytes(4, byteorder="big", signed=False)
    if index >= _HARDENED:
        hmac_ = _hmac_sha512(xkey.chain_code, xkey.key + index_bytes)
    else:
        hmac_ = _hmac_sha512(xkey.chain_code, Q_bytes + index_bytes)

    depth = xkey.depth + 1
    offset = int.from_bytes(hmac_[:32], byteorder="big", signed=False)
    if offset >= ec.n:
        raise InvalidChildError("invalid child key: IL >= n", index, depth)
    child_q = (q + offset) % ec.n
    if child_q == 0:
        raise InvalidChildError("invalid child key: zero", index, depth)

    return BIP32KeyData(
        version=xkey.version,
        depth=depth,
        parent_fingerprint=hash160(Q_bytes)[:4],
        index=index,
        chain_code=hmac_[32:],
        key=b"\x00" + child_q.to_bytes(32, byteorder="big", signed=False),
    )


def _ckd_pub(xkey: BIP32KeyData, index: int) -> BIP32KeyData:
    "Public parent key to public child key."

    if index >= _HARDENED:
        raise InvalidKeyError("invalid hardened derivation from public key")

    index_bytes = index.to_bytes(4, byteorder="big", signed=False)
    hmac_ = _hmac_sha512(xkey.chain_code, xkey.key + index_bytes)

    depth = xkey.depth + 1
    offset = int.from_bytes(hmac_[:32], byteorder="big", signed=False)
    if offset >= ec.n:
        raise InvalidChildError("invalid child key: IL >= n", index, depth)
    Q = ec.add(point_from_octets(xkey.key), mult(offset))
    # the point at infinity has zero y-coordinate in btclib
    if Q[1] == 0:
        raise InvalidChildError("invalid child key: infinity point", index, depth)

    return BIP32KeyData(
        version=xkey.version,
        depth=depth,
        parent_fingerprint=hash160(xkey.key)[:4],
        index=index,
        chain_code=hmac_[32:],
        key=bytes_from_point(Q),
    )


def _derive(xkey: BIP32KeyData, der_path: DerPath) -> BIP32KeyData:

    indexes = indexes_from_path(der_path)
    if xkey.depth + len(indexes) > 255:
        err_msg = f"final depth greater than 255: {xkey.depth + len(indexes)}"
        raise InvalidKeyError(err_msg)
    ckd = _ckd_prv if xkey.is_private else _ckd_pub
    for index in indexes:
        xkey = ckd(xkey, index)
    return xkey


def _neuter(xkey: BIP32KeyData) -> BIP32KeyData:
    "Return the extended public key of an extended private key."

    if not xkey.is_private:
        return xkey
    network = _network_from_version(xkey.version)
    q = int.from_bytes(xkey.key[1:], byteorder="big", signed=False)
    return BIP32KeyData(
        version=NETWORKS[network].bip32_pub,
        depth=xkey.depth,
        parent_fingerprint=xkey.parent_fingerprint,
        index=xkey.index,
        chain_code=xkey.chain_code,
        key=bytes_from_point(mult(q)),
    )


@dataclass(frozen=True)
class KeyPair:
    "A derived signer key, together with its root and derivation path."

    root: BIP32KeyData
    node: BIP32KeyData
    path: str
    network: str = "mainnet"

    @property
    def prv_key(self) -> int:
        return int.from_bytes(self.node.key[1:], byteorder="big", signed=False)

    @property
    def pub_key(self) -> bytes:
        "The 33 bytes SEC compressed public key."
        return bytes_from_point(mult(self.prv_key))

    @property
    def xprv(self) -> str:
        return self.node.b58encode()

    @property
    def xpub(self) -> str:
        return _neuter(self.node).b58encode()

    @property
    def root_xprv(self) -> str:
        return self.root.b58encode()

    @property
    def root_xpub(self) -> str:
        return _neuter(self.root).b58encode()

    @property
    def wif(self) -> str:
        return wif_from_prv_key(self.prv_key, self.network, True)


@dataclass(frozen=True)
class PublicExtendedKey:
    "An extended public key: it can derive non-hardened children only."

    node: BIP32KeyData
    network: str = "mainnet"

    @property
    def pub_key(self) -> bytes:
        return self.node.key

    @property
    def xpub(self) -> str:
        return self.node.b58encode()

    @classmethod
    def from_xpub(cls, xpub: str) -> PublicExtendedKey:

        try:
            node = BIP32KeyData.b58decode(xpub)
        except (BTClibValueError, ValueError) as e:
            raise InvalidKeyError(f"invalid extended key: {xpub}") from e
        if node.is_private:
            raise InvalidKeyError("not a public extended key")
        return cls(node, _network_from_version(node.version))


def derive(seed: bytes | str, der_path: DerPath, network: str = "mainnet") -> KeyPair:
    """Derive the key pair at the given path from a seed.

    Derivation is deterministic:
    the same (seed, path, network) always gives the same key pair.
    """

    root = rootxprv_from_seed(seed, network)
    node = _derive(root, der_path)
    return KeyPair(root, node, str_from_path(der_path), network)


def neuter(key_pair: KeyPair) -> PublicExtendedKey:
    "Return the extended public key of a key pair, without private material."
    return PublicExtendedKey(_neuter(key_pair.node), key_pair.network)


def derive_public(
    xpub: PublicExtendedKey | str, der_path: DerPath
) -> PublicExtendedKey:
    "Derive a child public key along a non-hardened path."

    if isinstance(xpub, str):
        xpub = PublicExtendedKey.from_xpub(xpub)
    node = _derive(xpub.node, der_path)
    return PublicExtendedKey(node, xpub.network)


def key_pair_from_xprv(root_xprv: str, der_path: DerPath) -> KeyPair:
    "Derive the key pair at the given path from a root extended private key."

    try:
        root = BIP32KeyData.b58decode(root_xprv)
    except (BTClibValueError, ValueError) as e:
        raise InvalidKeyError("invalid extended private key") from e
    if not root.is_private:
        raise InvalidKeyError("not a private extended key")
    if not root.is_root:
        raise InvalidKeyError("not a root extended key")
    node = _derive(root, der_path)
    network = _network_from_version(root.version)
    return KeyPair(root, node, str_from_path(der_path), network)
