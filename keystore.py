"""Classification of certificates and keys into a PKCS#12 keystore.

A ``Keystore`` collects root CAs, intermediate CAs, at most one end-entity
certificate and at most one private key. ``assemble`` turns the result into
PKCS#12 bytes: a keystore (key, its certificate and the chain) when a key
is present, otherwise a trust store holding only the chain.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from cert_lib import (
    DuplicateEndEntity,
    DuplicateKey,
    EncodeError,
    MissingEndEntityCert,
    get_common_name,
    get_subject_key_identifier,
)

__all__ = [
    "ROOT",
    "INTERMEDIATE",
    "ENTITY",
    "KeyEntry",
    "Keystore",
    "is_ca",
    "is_self_issued",
    "assemble",
    "load_container",
]

ROOT = "ROOT"
INTERMEDIATE = "INTERMEDIATE"
ENTITY = "ENTITY"


def is_ca(cert: x509.Certificate) -> bool:
    """True if the BasicConstraints extension marks ``cert`` as a CA."""
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    return bc.ca


def is_self_issued(cert: x509.Certificate) -> bool:
    # Name comparison only, no signature check.
    return cert.issuer.rfc4514_string() == cert.subject.rfc4514_string()


@dataclass
class KeyEntry:
    key: object
    origin: Optional[str] = None
    source: Optional[str] = None


@dataclass
class Keystore:
    roots: List[x509.Certificate] = field(default_factory=list)
    intermediates: List[x509.Certificate] = field(default_factory=list)
    entity_cert: Optional[x509.Certificate] = None
    key: Optional[KeyEntry] = None

    def add_certificate(self, cert: x509.Certificate) -> str:
        """Place ``cert`` by role and return the role.

        CAs are roots when issuer and subject match, intermediates
        otherwise. Anything else fills the single end-entity slot.

        Raises
        ------
        DuplicateEndEntity
            If the end-entity slot is already taken. The keystore is left
            as it was.
        """
        if is_ca(cert):
            if is_self_issued(cert):
                self.roots.append(cert)
                return ROOT
            self.intermediates.append(cert)
            return INTERMEDIATE

        if self.entity_cert is not None:
            raise DuplicateEndEntity(
                "cannot have two end-entity certs in keystore "
                f"(already holding CN={get_common_name(self.entity_cert.subject)}, "
                f"got CN={get_common_name(cert.subject)}). "
                "The only one should be for the keystore's private key"
            )
        self.entity_cert = cert
        return ENTITY

    def add_key(self, key, origin: Optional[str] = None, source: Optional[str] = None) -> None:
        if self.key is not None:
            held = f" (already holding a key from {self.key.source})" if self.key.source else ""
            raise DuplicateKey(f"cannot have two private keys in keystore{held}")
        self.key = KeyEntry(key, origin, source)

    @property
    def chain(self) -> List[x509.Certificate]:
        """Roots in insertion order followed by intermediates in insertion order."""
        return self.roots + self.intermediates

    @property
    def mode(self) -> str:
        return "keystore" if self.key is not None else "truststore"

    def describe(self) -> Iterator[str]:
        """Yield one report line per held certificate and key."""
        for role, certs in ((ROOT, self.roots), (INTERMEDIATE, self.intermediates)):
            for cert in certs:
                yield _report_line(role, cert)
        if self.entity_cert is not None:
            yield _report_line(ENTITY, self.entity_cert)
        if self.key is not None:
            yield f"KEY {type(self.key.key).__name__} | ORIGIN={self.key.origin} ({self.key.source})"


def _report_line(role: str, cert: x509.Certificate) -> str:
    return (
        f"{role} ID={get_subject_key_identifier(cert)} | CN={get_common_name(cert.subject, 'Unknown CN')}"
        f" | ISSUER={get_common_name(cert.issuer, 'Unknown CN')}"
    )


def assemble(keystore: Keystore, password: str) -> bytes:
    """Encode ``keystore`` as password-protected PKCS#12 bytes.

    Parameters
    ----------
    keystore : Keystore
        Classified certificates and key.
    password : str
        Container password. Must not be empty.

    Returns
    -------
    bytes
        A keystore payload if a key is held, otherwise a trust store payload.

    Raises
    ------
    MissingEndEntityCert
        If a key is held without an end-entity certificate.
    EncodeError
        If serialization fails, including a key the certificate does not
        match when the serializer checks for it.
    """
    chain = keystore.chain

    if keystore.key is not None:
        if keystore.entity_cert is None:
            raise MissingEndEntityCert(
                "failed to generate keystore because privkey was set "
                "but found no matching end-entity certificate"
            )
        name = get_common_name(keystore.entity_cert.subject, None)
        return _encode(
            name.encode("utf-8") if name else None,
            keystore.key.key,
            keystore.entity_cert,
            chain,
            password,
        )

    if keystore.entity_cert is not None:
        print(
            f"WARN: dropping end-entity certificate "
            f"CN={get_common_name(keystore.entity_cert.subject)}: "
            "no private key, writing a trust store.",
            file=sys.stderr,
        )
    if not chain:
        raise EncodeError("nothing to store: no CA certificates and no private key")
    return _encode(None, None, None, chain, password)


def _encode(name, key, cert, cas, password: str) -> bytes:
    try:
        return pkcs12.serialize_key_and_certificates(
            name=name,
            key=key,
            cert=cert,
            cas=cas or None,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    except (ValueError, TypeError) as e:
        raise EncodeError(f"failed to encode PKCS#12 container: {e}") from e


def load_container(payload: bytes, password: str):
    """Decode PKCS#12 bytes into ``(key, cert, additional_certs)``.

    Raises EncodeError on a wrong password or corrupt data.
    """
    try:
        key, cert, cas = pkcs12.load_key_and_certificates(payload, password.encode("utf-8"))
    except ValueError as e:
        raise EncodeError(f"failed to load PKCS#12 container: {e}") from e
    return key, cert, cas
