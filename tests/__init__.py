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

import ipaddress
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Iterable, List, Optional, Sequence, Tuple, Type
from unittest.mock import Mock

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from ldaptor.inmemory import fromLDIFFile
from ldaptor.interfaces import IConnectedLDAPEntry
from ldaptor.protocols.ldap.ldapserver import LDAPServer
from twisted.internet import reactor, ssl
from twisted.internet.endpoints import serverFromString
from twisted.internet.protocol import ServerFactory
from twisted.python.components import registerAdapter

from ldap_gateway.connection import DirectoryConnection, RawEntry, parse_target

LDIF = b"""\
dn: dc=org
dc: org
objectClass: dcObject

dn: dc=example,dc=org
dc: example
objectClass: dcObject
objectClass: organization

dn: ou=people,dc=example,dc=org
objectClass: organizationalUnit
ou: people

dn: ou=users,dc=example,dc=org
objectClass: organizationalUnit
ou: users

dn: cn=bob,ou=people,dc=example,dc=org
cn: bob
objectclass: person
gn: bob
mail: bob@example.org
# password is: secret
userPassword: {SSHA}JMjHQf5qSsxHsPrCIisx5bghXbkU0JHKa97geQ==

dn: cn=jin,ou=people,dc=example,dc=org
cn: jin
objectclass: person
gn: Jin
mail: jinn@example.org
mail: jin@example.org
# password is: secret
userPassword: {SSHA}JMjHQf5qSsxHsPrCIisx5bghXbkU0JHKa97geQ==

dn: cn=jdoe,ou=people,dc=example,dc=org
cn: jdoe
gn: John Doe
objectClass: person
# password is: terces
userPassword: {SSHA}6QrGxQ1jDkE6HFflgoO9FJPdkOWe9/FLFZzVMw==

dn: cn=jsmith,ou=people,dc=example,dc=org
cn: jsmith
gn: John Smith
objectClass: person
# password is: eekretsay
userPassword: {SSHA}mtIQXzjeID+j1LdjduYB1kjaHPgup8UnK4ofgw==

"""

BIND_DN = "cn=bob,ou=people,dc=example,dc=org"
BIND_PASSWORD = "secret"

RESULT_NAMES = {
    0: "success",
    16: "noSuchAttribute",
    32: "noSuchObject",
    49: "invalidCredentials",
    50: "insufficientAccessRights",
    68: "entryAlreadyExists",
}

TEST_HOSTNAME = "ldap.example.org"


async def _create_db():
    f = BytesIO(LDIF)
    db = await fromLDIFFile(f)
    f.close()
    return db


class _GatewayLDAPServer(LDAPServer):
    """Extends LDAPServer to answer searches for "*" with every attribute

    The request decodes to bytes, which the stock server does not recognise
    as the all-attributes selector.
    """

    def handle_LDAPSearchRequest(self, request, controls, reply):
        request.attributes = [
            b"*" if attribute in (b"*", "*") else attribute
            for attribute in request.attributes
        ]
        return LDAPServer.handle_LDAPSearchRequest(self, request, controls, reply)


class _LDAPServerFactory(ServerFactory):
    def __init__(self, root, ldap_server_type: Type[LDAPServer] = _GatewayLDAPServer):
        self.root = root
        self.protocol = ldap_server_type

    def buildProtocol(self, addr):
        proto = self.protocol()
        proto.debug = self.debug
        proto.factory = self
        return proto


class _LdapServer(object):
    def __init__(self, listener, scheme="ldap"):
        self.listener = listener
        self.scheme = scheme

        self._closed = False

    @property
    def uri(self) -> str:
        return "%s://127.0.0.1:%d" % (self.scheme, self.listener.getHost().port)

    def __enter__(self):
        pass

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if not self._closed:
            self._closed = True
            return self.listener.stopListening()


# When the LDAP Server protocol wants to manipulate the DIT, it invokes
# `root = interfaces.IConnectedLDAPEntry(self.factory)` to get the root
# of the DIT.  The factory that creates the protocol must therefore
# be adapted to the IConnectedLDAPEntry interface.
registerAdapter(lambda x: x.root, _LDAPServerFactory, IConnectedLDAPEntry)


async def create_ldap_server(
    ldap_server_type: Type[LDAPServer] = _GatewayLDAPServer,
):
    "Returns a context manager that represents the LDAP server."

    db = await _create_db()
    factory = _LDAPServerFactory(db, ldap_server_type)
    factory.debug = False

    # We just pick an arbitrary port to listen on.
    e = serverFromString(reactor, "tcp:0:interface=127.0.0.1")
    listener = await e.listen(factory)

    return _LdapServer(listener)


async def create_ldaps_server(private_key, certificate):
    "Like create_ldap_server, but speaking LDAP over TLS with the given identity."

    db = await _create_db()
    factory = _LDAPServerFactory(db)
    factory.debug = False

    identity = ssl.PrivateCertificate.loadPEM(
        private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        + certificate.public_bytes(serialization.Encoding.PEM)
    )
    listener = reactor.listenSSL(0, factory, identity.options(), interface="127.0.0.1")

    return _LdapServer(listener, scheme="ldaps")


def mock_ldap3_connection(
    entries: Iterable[RawEntry] = (),
    results: Sequence[Tuple[int, str]] = (),
) -> Mock:
    """An ldap3.Connection double.

    ``results`` are the (result code, diagnostic message) pairs answered to
    successive add, delete and modify calls. Calls beyond them succeed.
    """
    conn = Mock(
        spec_set=[
            "rebind",
            "search",
            "modify",
            "add",
            "delete",
            "unbind",
            "result",
            "response",
        ]
    )
    conn.rebind.return_value = True
    conn.result = ldap3_result(0)
    conn.response = [
        {"type": "searchResEntry", "dn": dn, "raw_attributes": attributes}
        for dn, attributes in entries
    ] + [{"type": "searchResDone"}]

    pending = list(results)

    def _respond(*args, **kwargs):
        code, message = pending.pop(0) if pending else (0, "")
        conn.result = ldap3_result(code, message)
        return code == 0

    conn.modify.side_effect = _respond
    conn.add.side_effect = _respond
    conn.delete.side_effect = _respond
    return conn


def ldap3_result(code: int, message: str = ""):
    return {
        "result": code,
        "description": RESULT_NAMES.get(code, "other"),
        "message": message,
    }


def mock_connection_factory(ldap3_connection: Mock) -> Mock:
    """A ConnectionFactory double whose connections all wrap ``ldap3_connection``."""
    factory = Mock(spec_set=["open"])
    factory.open.side_effect = lambda uri: DirectoryConnection(
        ldap3_connection, parse_target(uri)
    )
    return factory


def make_certificate(
    common_name: str,
    dns_names: List[str],
    issuer: Optional[Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]] = None,
    ca: bool = False,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    ip_addresses: Sequence[str] = (),
):
    """Returns (private key, certificate), self-signed unless ``issuer``
    is given."""
    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=1)
    not_after = not_after or now + timedelta(days=30)

    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    signing_key, issuer_name, issuer_public_key = key, subject, key.public_key()
    if issuer is not None:
        signing_key = issuer[0]
        issuer_name = issuer[1].subject
        issuer_public_key = issuer[0].public_key()

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=not ca,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key),
            critical=False,
        )
    )
    alt_names = [x509.DNSName(name) for name in dns_names] + [
        x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses
    ]
    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(alt_names), critical=False
        )
    if not ca:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )

    return key, builder.sign(signing_key, hashes.SHA256())


def make_server_identity(**validity):
    """A CA and a server certificate for TEST_HOSTNAME issued by it.

    Returns (ca certificate, server key, server certificate).
    """
    ca_key, ca_cert = make_certificate("Test CA", [], ca=True)
    server_key, server_cert = make_certificate(
        TEST_HOSTNAME, [TEST_HOSTNAME], issuer=(ca_key, ca_cert), **validity
    )
    return ca_cert, server_key, server_cert


def pem(*certificates: x509.Certificate) -> bytes:
    return b"".join(
        cert.public_bytes(serialization.Encoding.PEM) for cert in certificates
    )
