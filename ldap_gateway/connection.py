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

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import ldap3
import ldap3.core.exceptions

from ldap_gateway import trust
from ldap_gateway.config import DEFAULT_CONNECT_TIMEOUT, TrustPolicy
from ldap_gateway.errors import (
    BindError,
    DirectoryConnectionError,
    InvalidUri,
    ModifyError,
    SearchError,
)
from ldap_gateway.models import AttributeOperation, DirectoryResult, SearchScope

logger = logging.getLogger(__name__)

# (dn, attribute name -> raw values), in the order the directory sent them.
RawEntry = Tuple[str, Dict[str, List[bytes]]]

# Result code ldap3 leaves us with when no response was recorded: "other".
_RESULT_OTHER = 80


class DirectoryScheme(enum.Enum):
    PLAIN = "ldap"
    SECURE = "ldaps"


DEFAULT_PORTS = {
    DirectoryScheme.PLAIN: 389,
    DirectoryScheme.SECURE: 636,
}


@dataclass(frozen=True)
class DirectoryTarget:
    scheme: DirectoryScheme
    host: str
    port: int

    @property
    def secure(self) -> bool:
        return self.scheme == DirectoryScheme.SECURE

    def __str__(self) -> str:
        host = "[%s]" % self.host if ":" in self.host else self.host
        return "{scheme}://{host}:{port}".format(
            scheme=self.scheme.value, host=host, port=self.port
        )


def parse_target(uri: Optional[str]) -> DirectoryTarget:
    """Parse an ldap:// or ldaps:// URI into a DirectoryTarget.

    A missing (or zero) port is replaced by the default port of the scheme.

    Raises:
        InvalidUri: if the scheme, host or port cannot be determined.
    """
    if not uri or not uri.strip():
        raise InvalidUri("LDAP URI is required")

    try:
        parts = urlsplit(uri.strip())
        port = parts.port
    except ValueError as e:
        raise InvalidUri("Invalid LDAP URI {uri}: {err}".format(uri=uri, err=e)) from e

    try:
        scheme = DirectoryScheme(parts.scheme.lower())
    except ValueError:
        raise InvalidUri(
            "Unsupported scheme in LDAP URI {uri}, expected ldap:// or ldaps://".format(
                uri=uri
            )
        )

    if not parts.hostname:
        raise InvalidUri("LDAP URI {uri} has no host".format(uri=uri))

    return DirectoryTarget(
        scheme=scheme,
        host=parts.hostname,
        port=port or DEFAULT_PORTS[scheme],
    )


class DirectoryConnection:
    """One open connection to a directory server, owned by a single request.

    Use it as a context manager so it is closed on every exit path:

        with factory.open(uri) as conn:
            conn.bind(user, password)
            ...
    """

    def __init__(self, connection: ldap3.Connection, target: DirectoryTarget):
        self.connection = connection
        self.target = target

        self._closed = False

    def __enter__(self) -> "DirectoryConnection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def bind(self, principal: str, secret: str) -> None:
        """Authenticate the connection with a simple bind.

        Raises:
            BindError: if the directory rejects the credentials.
            DirectoryConnectionError: if the connection dropped meanwhile.
        """
        try:
            bound = self.connection.rebind(
                user=principal,
                password=secret,
                authentication=ldap3.SIMPLE,
                read_server_info=False,
            )
        except ldap3.core.exceptions.LDAPCommunicationError as e:
            raise DirectoryConnectionError(
                "Connection to {target} lost during bind: {err}".format(
                    target=self.target, err=e
                )
            ) from e
        except ldap3.core.exceptions.LDAPException as e:
            raise BindError(
                "Bind as '{user}' failed: {err}".format(user=principal, err=e)
            ) from e

        if not bound:
            result = self._last_result()
            logger.info(
                "Binding against %s as '%s' failed: %s",
                self.target,
                principal,
                result.description,
            )
            raise BindError(
                "Bind as '{user}' failed: {reason}".format(
                    user=principal, reason=result.diagnostic or "invalidCredentials"
                )
            )

        logger.debug("Bound to %s as '%s'", self.target, principal)

    def search(
        self, base: str, scope: SearchScope, search_filter: str
    ) -> List[RawEntry]:
        """Run a search requesting all user attributes.

        Raises:
            SearchError: if the filter is invalid or the directory reports
                a non-success result.
        """
        try:
            self.connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope.ldap_scope,
                attributes=ldap3.ALL_ATTRIBUTES,
            )
        except ldap3.core.exceptions.LDAPException as e:
            raise SearchError(
                "Search of '{base}' with filter {filter} failed: {err}".format(
                    base=base, filter=search_filter, err=e
                )
            ) from e

        result = self._last_result()
        if not result.succeeded:
            raise SearchError(
                "Search of '{base}' failed: {reason}".format(
                    base=base, reason=result.diagnostic
                )
            )

        return [
            (response["dn"], dict(response["raw_attributes"].items()))
            for response in self.connection.response or []
            if response.get("type") == "searchResEntry"
        ]

    def modify(
        self, dn: str, operations: Sequence[AttributeOperation]
    ) -> DirectoryResult:
        """Send every operation to the directory in a single modify request."""
        changes: Dict[str, List[Tuple[str, List[Union[str, bytes]]]]] = {}
        for operation in operations:
            changes.setdefault(operation.attribute_name, []).append(
                (operation.kind.ldap_operation, list(operation.values))
            )

        try:
            self.connection.modify(dn, changes)
        except ldap3.core.exceptions.LDAPException as e:
            raise ModifyError(
                "Modify of '{dn}' failed: {err}".format(dn=dn, err=e)
            ) from e
        return self._last_result()

    def add(self, dn: str, attributes: Dict[str, List[Union[str, bytes]]]) -> DirectoryResult:
        try:
            self.connection.add(dn, attributes=attributes)
        except ldap3.core.exceptions.LDAPException as e:
            raise ModifyError("Add of '{dn}' failed: {err}".format(dn=dn, err=e)) from e
        return self._last_result()

    def delete(self, dn: str) -> DirectoryResult:
        try:
            self.connection.delete(dn)
        except ldap3.core.exceptions.LDAPException as e:
            raise ModifyError(
                "Delete of '{dn}' failed: {err}".format(dn=dn, err=e)
            ) from e
        return self._last_result()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        try:
            self.connection.unbind()
        except (ldap3.core.exceptions.LDAPException, OSError) as e:
            logger.debug("Ignoring error while closing %s: %s", self.target, e)
        else:
            logger.debug("Closed LDAP connection to %s", self.target)

    def _last_result(self) -> DirectoryResult:
        result = self.connection.result or {}
        return DirectoryResult(
            code=result.get("result", _RESULT_OTHER),
            description=result.get("description") or "",
            message=result.get("message") or "",
        )


class ConnectionFactory:
    """Opens one directory connection per request.

    The TLS settings are derived from ``policy`` once, here, and shared by
    every ldaps:// connection afterwards.
    """

    def __init__(
        self,
        policy: TrustPolicy,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.policy = policy
        self.connect_timeout = connect_timeout
        self.tls = trust.resolve(policy)
        self.check_peer_hostname = trust.checks_peer_hostname(policy)

    def open(self, uri: str) -> DirectoryConnection:
        """Open a connection to the directory named by ``uri``.

        Raises:
            InvalidUri: if ``uri`` cannot be parsed.
            DirectoryConnectionError: if the transport cannot be
                established (DNS failure, refused connection, TLS handshake,
                certificate not matching the host).
        """
        target = parse_target(uri)
        server = ldap3.Server(
            target.host,
            port=target.port,
            use_ssl=target.secure,
            tls=self.tls if target.secure else None,
            get_info=ldap3.NONE,
            connect_timeout=self.connect_timeout,
        )
        connection = ldap3.Connection(server, raise_exceptions=False)

        logger.debug("Opening LDAP connection to %s", target)
        try:
            connection.open(read_server_info=False)
        except ldap3.core.exceptions.LDAPException as e:
            logger.warning("Unable to connect to %s: %s", target, e)
            raise DirectoryConnectionError(
                "Unable to connect to {target}: {err}".format(target=target, err=e)
            ) from e

        if target.secure and self.check_peer_hostname:
            try:
                trust.verify_peer_hostname(
                    connection.socket.getpeercert(binary_form=True), target.host
                )
            except DirectoryConnectionError:
                connection.unbind()
                raise

        return DirectoryConnection(connection, target)
