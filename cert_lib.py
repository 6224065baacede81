"""Utility functions for loading certificates and keys from PEM files.

Provides the shared pieces the keystore builder needs around its core:
the error taxonomy, discovery of candidate input files, PEM block
extraction, and parsing of certificates and private keys into
``cryptography`` objects.
"""

from __future__ import annotations

import base64
import os
import re
from typing import Iterable, Iterator, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa

__all__ = [
    "KsBuilderError",
    "ConfigurationError",
    "WalkError",
    "ReadError",
    "ParseError",
    "DuplicateEndEntity",
    "DuplicateKey",
    "MissingEndEntityCert",
    "EncodeError",
    "WriteError",
    "ALLOWED_EXTENSIONS",
    "collect_files",
    "read_file",
    "iter_pem_blocks",
    "load_private_key",
    "load_certificates",
    "load_objects",
    "get_subject_key_identifier",
    "get_common_name",
]

ALLOWED_EXTENSIONS = (".crt", ".key", ".pem")

PKCS8_KEY = "PRIVATE KEY"
PKCS1_KEY = "RSA PRIVATE KEY"
CERTIFICATE = "CERTIFICATE"

# Key types a PKCS#12 key bag can carry.
SUPPORTED_KEY_TYPES = (
    rsa.RSAPrivateKey,
    dsa.DSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
)

_PEM_RE = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n(.*?)-----END \1-----",
    re.DOTALL,
)


class KsBuilderError(Exception):
    """Base error for every failure that aborts a keystore build."""


class ConfigurationError(KsBuilderError):
    """Required option missing."""


class WalkError(KsBuilderError):
    """A source directory could not be traversed."""


class ReadError(KsBuilderError):
    """A source file could not be read."""


class ParseError(KsBuilderError):
    """Malformed PEM/DER data or an unsupported key encoding."""


class DuplicateEndEntity(KsBuilderError):
    """A second end-entity certificate was offered."""


class DuplicateKey(KsBuilderError):
    """A second private key was offered."""


class MissingEndEntityCert(KsBuilderError):
    """A private key is present but there is no certificate for it."""


class EncodeError(KsBuilderError):
    """The PKCS#12 container could not be encoded or decoded."""


class WriteError(KsBuilderError):
    """The output file could not be written."""


def _walk_dir(root: str, recursive: bool) -> Iterator[str]:
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError as e:
        raise WalkError(f"failed to walk {root}: {e}") from e

    for entry in entries:
        try:
            is_link = entry.is_symlink()
            is_dir = entry.is_dir()
        except OSError as e:
            raise WalkError(f"failed to walk {entry.path}: {e}") from e
        if is_dir:
            if is_link:
                # Linked directories are never followed, recursive or not.
                print(f"INFO: Skipping {entry.path}: is a symlink to a directory.")
            elif recursive:
                print(f"INFO: Descending into {entry.path}: recurse == true.")
                yield from _walk_dir(entry.path, recursive)
            else:
                print(f"INFO: Skipping {entry.path}: is a directory and recurse == false.")
            continue
        if not entry.name.endswith(ALLOWED_EXTENSIONS):
            print(f"INFO: Skipping {entry.path}: extension is not '.crt', '.key', or '.pem'.")
            continue
        yield entry.path


def collect_files(
    dirs: Iterable[str],
    files: Iterable[str] = (),
    *,
    recursive: bool = False,
) -> List[str]:
    """Build the ordered list of input files.

    Parameters
    ----------
    dirs : iterable of str
        Directories to search for ``.crt``, ``.key`` and ``.pem`` files.
    files : iterable of str, optional
        Files named explicitly. They come first and skip the extension check.
    recursive : bool, optional
        Descend into subdirectories (default: False).

    Returns
    -------
    list of str
        Absolute paths, de-duplicated, in first-seen order.

    Raises
    ------
    WalkError
        If a directory does not exist or cannot be listed.
    """
    candidates = [os.path.abspath(f) for f in files]

    for d in dirs:
        root = os.path.abspath(d)
        print(f"INFO: Walking {root}...")
        if not os.path.isdir(root):
            raise WalkError(f"failed to walk {root}: not a directory")
        candidates.extend(_walk_dir(root, recursive))
        print(f"INFO: Completed walk of {root}.")

    seen = set()
    unique = []
    for path in candidates:
        if path not in seen:
            seen.add(path)
            unique.append(path)
    return unique


def read_file(path: str) -> bytes:
    """Read a whole input file, raising ReadError on failure."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ReadError(f"failed to load {path}: {e}") from e


def iter_pem_blocks(data: bytes) -> Iterator[Tuple[str, bytes]]:
    """Yield ``(block_type, der_bytes)`` for each PEM block in ``data``.

    Text outside the armor lines is ignored, and so are RFC 1421 style
    header lines (``Proc-Type: ...``) inside a block.
    """
    for m in _PEM_RE.finditer(data):
        block_type = m.group(1).decode("ascii")
        body = b"".join(
            line.strip() for line in m.group(2).splitlines() if b":" not in line
        )
        try:
            der = base64.b64decode(body, validate=True)
        except ValueError as e:
            raise ParseError(f"invalid base64 in {block_type} block: {e}") from e
        yield block_type, der


def load_private_key(der: bytes, block_type: str):
    """Parse a DER private key taken from a ``PRIVATE KEY`` or ``RSA PRIVATE KEY`` block.

    Both encodings end up as the same kind of key object; the caller keeps
    the block type as the key's origin.
    """
    try:
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ParseError(f"failed to parse {block_type}: {e}") from e

    if block_type == PKCS1_KEY and not isinstance(key, rsa.RSAPrivateKey):
        raise ParseError(f"{block_type} block does not hold an RSA key")
    if not isinstance(key, SUPPORTED_KEY_TYPES):
        raise ParseError(f"unsupported private key type {type(key).__name__}")
    return key


def load_certificates(ders: Iterable[bytes]) -> List[x509.Certificate]:
    """Parse a bundle of DER certificates, keeping their order.

    Extensions are decoded here as well; ``cryptography`` otherwise defers
    that until ``cert.extensions`` is first read during classification.
    """
    certs = []
    for der in ders:
        try:
            cert = x509.load_der_x509_certificate(der)
            cert.extensions
        except ValueError as e:
            raise ParseError(f"failed to parse certificate: {e}") from e
        certs.append(cert)
    return certs


def load_objects(path: str) -> Tuple[List[Tuple[object, str]], List[x509.Certificate]]:
    """Load all private keys and certificates from one PEM file.

    Parameters
    ----------
    path : str
        File to read.

    Returns
    -------
    tuple
        ``(keys, certs)`` where ``keys`` is a list of ``(key, origin)``
        pairs, origin being ``"PKCS#8"`` or ``"PKCS#1"``, and ``certs`` the
        file's certificates in order. Unknown block types are ignored.

    Raises
    ------
    ReadError
        If the file cannot be read.
    ParseError
        If any key or certificate block is malformed.
    """
    data = read_file(path)

    keys = []
    cert_ders = []
    try:
        for block_type, der in iter_pem_blocks(data):
            if block_type == PKCS8_KEY:
                keys.append((load_private_key(der, block_type), "PKCS#8"))
            elif block_type == PKCS1_KEY:
                keys.append((load_private_key(der, block_type), "PKCS#1"))
            elif block_type == CERTIFICATE:
                cert_ders.append(der)
        certs = load_certificates(cert_ders)
    except ParseError as e:
        raise ParseError(f"{path}: {e}") from e

    return keys, certs


def get_subject_key_identifier(cert: x509.Certificate) -> str:
    """Return the ID shown in ``ROOT ID=...`` report lines.

    The Subject Key Identifier in hex, so entries can be matched against
    ``openssl x509 -text`` output; certificates without the extension fall
    back to their SHA-1 fingerprint.
    """
    try:
        return cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value.digest.hex()
    except x509.ExtensionNotFound:
        return cert.fingerprint(hashes.SHA1()).hex()


def get_common_name(name: x509.Name, default: Optional[str] = "Unknown") -> Optional[str]:
    # Used for report lines, error messages and the keystore friendly name;
    # pass default=None where a missing CN must stay missing.
    cn_attrs = name.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    return cn_attrs[0].value if cn_attrs else default
