""" keyproof build script for setuptools.

"""

from setuptools import find_packages, setup  # type: ignore

import keyproof

with open("README.md", "r", encoding="ascii") as file_:
    longdescription = file_.read()

setup(
    name=keyproof.name,
    version=keyproof.__version__,
    license=keyproof.__license__,
    author=keyproof.__author__,
    author_email=keyproof.__author_email__,
    description="Proof of possession of an m-of-n threshold of BIP32 keys",
    long_description=longdescription,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={"keyproof": ["_data/*.json"]},
    install_requires=["btclib>=2023.7.12,<2024", "dataclasses_json"],
    extras_require={
        "secp256k1": ["btclib_libsecp256k1"],
        "test": ["pytest"],
    },
    entry_points={"console_scripts": ["keyproof=keyproof.cli:main"]},
    keywords=(
        "bitcoin bip32 multisig p2wsh segwit proof-of-reserves "
        "key-possession challenge"
    ),
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Natural Language :: English",
        "Operating System :: OS Independent",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
