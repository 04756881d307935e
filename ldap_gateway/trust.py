# -*- coding: utf-8 -*-
# Copyright 2016 OpenMarket Ltd
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Turns the configured TrustPolicy into ldap3 TLS settings.

The settings are resolved once at startup and shared, read-only, by every
secure connection the gateway opens afterwards.
"""

import ipaddress
import logging
import os
import ssl
import sys
from datetime import datetime, timezone
from typing import List, Optional

import ldap3
import service_identity
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from service_identity.cryptography import (
    verify_certificate_hostname,
    verify_certificate_ip_address,
)

from ldap_gateway.config import TrustMode, TrustPolicy
from ldap_gateway.errors import DirectoryConnectionError, TrustStoreError

logger = logging.getLogger(__name__)

CLASSPATH_PREFIX = "classpath:"
FILE_PREFIX = "file:"

# ldap3 skips the hostname check entirely when this is one of the valid names.
ANY_HOSTNAME = "*"

PEM_FORMATS = ("PEM",)
DER_FORMATS = ("DER",)
PKCS12_FORMATS = ("PKCS12", "PFX", "P12")


def resolve(policy: TrustPolicy) -> ldap3.Tls:
    """Build the TLS settings for ldaps:// connections from ``policy``.

    Raises:
        TrustStoreError: if the policy names a trust store that cannot be
            read, parsed, or holds no currently valid certificate.
    """
    valid_names = None if policy.verify_hostname else [ANY_HOSTNAME]
    if not policy.verify_hostname:
        logger.warning("Hostname verification is disabled for LDAPS connections")

    if policy.mode == TrustMode.TRUST_ALL:
        logger.warning(
            "Trusting all LDAPS server certificates. "
            "Set ssl.trust_all to false outside of development."
        )
        return ldap3.Tls(validate=ssl.CERT_NONE, valid_names=valid_names)

    if not policy.store_path:
        logger.info(
            "No truststore configured, using the system default: %s",
            ssl.get_default_verify_paths().openssl_cafile,
        )
        return ldap3.Tls(validate=ssl.CERT_REQUIRED, valid_names=valid_names)

    ca_data = load_trust_store(
        policy.store_path, policy.store_format, policy.store_password
    )
    return ldap3.Tls(
        validate=ssl.CERT_REQUIRED, ca_certs_data=ca_data, valid_names=valid_names
    )


def checks_peer_hostname(policy: TrustPolicy) -> bool:
    """Whether the peer hostname has to be checked after the handshake.

    ldap3 only matches hostnames while validating the chain, which the
    trust-all mode turns off.
    """
    return policy.mode == TrustMode.TRUST_ALL and policy.verify_hostname


def verify_peer_hostname(der_certificate: Optional[bytes], host: str) -> None:
    """Match the server certificate against the host that was dialled.

    Raises:
        DirectoryConnectionError: if the server sent no certificate or its
            certificate is not valid for ``host``.
    """
    if not der_certificate:
        raise DirectoryConnectionError(
            "Server {host} presented no certificate".format(host=host)
        )
    certificate = x509.load_der_x509_certificate(der_certificate)
    try:
        if _is_ip_address(host):
            verify_certificate_ip_address(certificate, host)
        else:
            verify_certificate_hostname(certificate, host)
    except (service_identity.VerificationError, service_identity.CertificateError) as e:
        logger.warning("Certificate of %s does not match its hostname: %s", host, e)
        raise DirectoryConnectionError(
            "Hostname verification failed for {host}: {err}".format(host=host, err=e)
        ) from e


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def load_trust_store(
    path: str, store_format: str, password: Optional[str] = None
) -> str:
    """Load the certificates of a trust store as a PEM bundle.

    Certificates outside their validity period are dropped with a warning.

    Args:
        path: ``classpath:<relative path>``, ``file:<path>`` or a bare path.
        store_format: one of PEM, DER or PKCS12 (PFX, P12).
        password: only used by PKCS12 stores.

    Returns:
        The usable certificates, PEM encoded and concatenated.
    """
    file_path = resolve_store_path(path)
    try:
        with open(file_path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise TrustStoreError(
            "Unable to read truststore {path}: {err}".format(path=file_path, err=e)
        ) from e

    certificates = _parse_certificates(data, store_format.upper(), password)
    usable = _currently_valid(certificates)
    if not usable:
        raise TrustStoreError(
            "Truststore {path} contains no currently valid certificate".format(
                path=file_path
            )
        )

    logger.info(
        "Loaded %d trusted certificate(s) from %s", len(usable), file_path
    )
    return "".join(
        cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        for cert in usable
    )


def resolve_store_path(path: str) -> str:
    if path.startswith(CLASSPATH_PREFIX):
        relative = path[len(CLASSPATH_PREFIX):].lstrip("/")
        for entry in sys.path:
            candidate = os.path.join(entry or os.curdir, relative)
            if os.path.isfile(candidate):
                return candidate
        raise TrustStoreError(
            "Truststore {path} was not found on the Python path".format(path=path)
        )
    if path.startswith(FILE_PREFIX):
        path = path[len(FILE_PREFIX):]
        if path.startswith("//"):
            path = path[2:]
    return path


def _parse_certificates(
    data: bytes, store_format: str, password: Optional[str]
) -> List[x509.Certificate]:
    try:
        if store_format in PEM_FORMATS:
            return x509.load_pem_x509_certificates(data)
        if store_format in DER_FORMATS:
            return [x509.load_der_x509_certificate(data)]
        if store_format in PKCS12_FORMATS:
            secret = password.encode("utf-8") if password is not None else None
            _, certificate, additional = pkcs12.load_key_and_certificates(
                data, secret
            )
            certs = [certificate] if certificate is not None else []
            return certs + list(additional)
    except ValueError as e:
        raise TrustStoreError(
            "Unable to parse {fmt} truststore: {err}".format(fmt=store_format, err=e)
        ) from e

    raise TrustStoreError(
        "Unsupported truststore type {fmt}, expected one of: {known}".format(
            fmt=store_format,
            known=", ".join(PEM_FORMATS + DER_FORMATS + PKCS12_FORMATS),
        )
    )


def _currently_valid(certificates: List[x509.Certificate]) -> List[x509.Certificate]:
    now = datetime.now(timezone.utc)
    usable = []
    for cert in certificates:
        if cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
            usable.append(cert)
        else:
            logger.warning(
                "Ignoring truststore certificate %s, valid from %s to %s",
                cert.subject.rfc4514_string(),
                cert.not_valid_before_utc,
                cert.not_valid_after_utc,
            )
    return usable
