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

import base64
import functools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ldap_gateway import render
from ldap_gateway.connection import ConnectionFactory, DirectoryConnection
from ldap_gateway.errors import GatewayError, ValidationError
from ldap_gateway.ldif import ChangeRecord, ChangeType, parse_change_records
from ldap_gateway.models import (
    BATCH_SUCCESS_MESSAGE,
    MODIFY_SUCCESS_MESSAGE,
    AttributeOperation,
    AttributeValue,
    BatchOutcome,
    Credentials,
    DirectoryResult,
    ModificationKind,
    ModifyOutcome,
    NormalizedEntry,
    SearchSpec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    """Outcome of applying one LDIF change record."""

    dn: str
    succeeded: bool
    failure: Optional[str] = None


@dataclass(frozen=True)
class _BatchProgress:
    any_failed: bool = False
    failures: Tuple[str, ...] = ()
    last_dn: str = ""

    def outcome(self) -> BatchOutcome:
        if not self.any_failed:
            return BatchOutcome(True, BATCH_SUCCESS_MESSAGE, self.last_dn)
        return BatchOutcome(
            False, "".join(failure + "; " for failure in self.failures), self.last_dn
        )


def _fold_record(progress: _BatchProgress, result: RecordResult) -> _BatchProgress:
    if result.succeeded:
        return _BatchProgress(progress.any_failed, progress.failures, result.dn)
    return _BatchProgress(True, progress.failures + (result.failure,), result.dn)


class LdapGateway:
    """Runs search and modify operations against the directory a request
    names, bound with the requester's own credentials.

    Every method opens its own connection and closes it before returning,
    whether the operation succeeded or not. Methods block, so the HTTP layer
    calls them from a worker thread.
    """

    def __init__(self, connection_factory: ConnectionFactory):
        self.connection_factory = connection_factory

    def search(
        self, spec: SearchSpec, credentials: Credentials
    ) -> List[NormalizedEntry]:
        """Search the directory.

        Raises:
            InvalidUri, DirectoryConnectionError: if no connection could be
                made to ``spec.target``.
            BindError: if the credentials are rejected.
            SearchError: if the directory reports a failed search.
        """
        scope = spec.resolved_scope
        with self.connection_factory.open(spec.target) as conn:
            conn.bind(credentials.principal, credentials.secret)
            logger.debug(
                "LDAP search on %s: base='%s' scope=%s filter=%s",
                conn.target,
                spec.base,
                scope.value,
                spec.filter,
            )
            raw_entries = conn.search(spec.base, scope, spec.filter)

        entries = [normalize_entry(dn, attributes) for dn, attributes in raw_entries]
        logger.info(
            "LDAP search of '%s' as '%s' returned %d entries",
            spec.base,
            credentials.principal,
            len(entries),
        )
        return entries

    def search_to_ldif(self, spec: SearchSpec, credentials: Credentials) -> str:
        return render.entries_as_ldif(self.search(spec, credentials))

    def modify(
        self,
        dn: str,
        operations: Sequence[AttributeOperation],
        target: str,
        credentials: Credentials,
    ) -> ModifyOutcome:
        """Apply ``operations`` to the entry ``dn`` in one modify request.

        A directory refusing the modification is reported in the returned
        outcome, not raised.

        Raises:
            ValidationError: if the request is malformed. Nothing has been
                sent to the directory in that case.
            InvalidUri, DirectoryConnectionError, BindError: as for search.
            ModifyError: for protocol-level faults.
        """
        operations = validate_operations(dn, operations)

        with self.connection_factory.open(target) as conn:
            conn.bind(credentials.principal, credentials.secret)
            result = conn.modify(dn, operations)

        if result.succeeded:
            logger.info("Modified '%s' as '%s'", dn, credentials.principal)
            return ModifyOutcome(True, MODIFY_SUCCESS_MESSAGE, dn)

        logger.warning(
            "Directory refused modification of '%s': %s", dn, result.diagnostic
        )
        return ModifyOutcome(False, result.diagnostic, dn)

    def apply_ldif(
        self, content: Union[str, bytes], target: str, credentials: Credentials
    ) -> BatchOutcome:
        """Apply every change record in ``content``, in order, over a single
        bound connection.

        A record that fails, whether refused by the directory or raising, is
        reported in the outcome and the remaining records are still applied.

        Raises:
            LdifParseError: if ``content`` is not valid LDIF. Nothing has
                been sent to the directory in that case.
            InvalidUri, DirectoryConnectionError, BindError: as for search.
        """
        records = parse_change_records(content)

        with self.connection_factory.open(target) as conn:
            conn.bind(credentials.principal, credentials.secret)
            progress = functools.reduce(
                _fold_record,
                (self._apply_record(conn, record) for record in records),
                _BatchProgress(),
            )

        outcome = progress.outcome()
        logger.info(
            "Applied %d LDIF record(s) as '%s', success=%s",
            len(records),
            credentials.principal,
            outcome.succeeded,
        )
        return outcome

    def _apply_record(
        self, conn: DirectoryConnection, record: ChangeRecord
    ) -> RecordResult:
        try:
            result = _apply_change(conn, record)
        except GatewayError as e:
            logger.warning("Error applying LDIF record for '%s': %s", record.dn, e)
            return _record_error(record, e)
        except Exception as e:
            logger.exception("Unexpected error applying LDIF record for '%s'", record.dn)
            return _record_error(record, e)

        if result.succeeded:
            return RecordResult(record.dn, True)

        logger.warning(
            "Directory refused LDIF record for '%s': %s", record.dn, result.diagnostic
        )
        return RecordResult(
            record.dn,
            False,
            "Failed to modify {dn}: {reason}".format(
                dn=record.dn, reason=result.diagnostic
            ),
        )


def _record_error(record: ChangeRecord, e: Exception) -> RecordResult:
    return RecordResult(
        record.dn,
        False,
        "Error modifying {dn}: {reason}".format(dn=record.dn, reason=e),
    )


def _apply_change(conn: DirectoryConnection, record: ChangeRecord) -> DirectoryResult:
    if record.change_type == ChangeType.ADD:
        return conn.add(record.dn, record.attributes)
    if record.change_type == ChangeType.DELETE:
        return conn.delete(record.dn)
    return conn.modify(record.dn, record.operations)


def validate_operations(
    dn: str, operations: Optional[Sequence[AttributeOperation]]
) -> List[AttributeOperation]:
    """Check a modify request before anything is sent to the directory.

    Returns the operations with their kinds parsed and missing value lists
    replaced by empty ones.
    """
    if not dn or not dn.strip():
        raise ValidationError("DN is required")
    if not operations:
        raise ValidationError("Modifications cannot be empty")

    validated = []
    for operation in operations:
        kind = operation.kind
        if not isinstance(kind, ModificationKind):
            kind = ModificationKind.parse(kind)
        if not operation.attribute_name:
            raise ValidationError("Attribute is required for every modification")
        validated.append(
            AttributeOperation(kind, operation.attribute_name, list(operation.values or ()))
        )
    return validated


def normalize_entry(dn: str, raw_attributes: Dict[str, List[bytes]]) -> NormalizedEntry:
    """Collapse attribute values: one value becomes a scalar, anything else
    a list in directory order."""
    attributes: Dict[str, AttributeValue] = {}
    for name, raw_values in raw_attributes.items():
        values = [_decode_value(value) for value in raw_values]
        attributes[name] = values[0] if len(values) == 1 else values
    return NormalizedEntry(dn, attributes)


def _decode_value(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        return value
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        # Binary values (certificates, photos) are passed on base64 encoded.
        return base64.b64encode(value).decode("ascii")
