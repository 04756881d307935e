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

"""Parsing of LDIF change records (RFC 2849) into ChangeRecord values."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Union

from ldaptor.protocols.ldap import ldifdelta, ldifprotocol
from twisted.internet import error
from twisted.python.failure import Failure

from ldap_gateway.errors import LdifParseError
from ldap_gateway.models import AttributeOperation, ModificationKind

logger = logging.getLogger(__name__)


class ChangeType(enum.Enum):
    ADD = "add"
    DELETE = "delete"
    MODIFY = "modify"


@dataclass
class ChangeRecord:
    change_type: ChangeType
    dn: str
    operations: List[AttributeOperation] = field(default_factory=list)
    attributes: Dict[str, List[Union[str, bytes]]] = field(default_factory=dict)


_MOD_SPECS = {
    b"add": ModificationKind.ADD,
    b"delete": ModificationKind.DELETE,
    b"replace": ModificationKind.REPLACE,
}


class LDIFLineTooLongError(ldifprotocol.LDIFParseError):
    """LDIF line too long"""


class _ChangeRecordParser(ldifdelta.LDIFDelta):
    """LDIFDelta emitting ChangeRecords instead of ldaptor deltas.

    Values stay in file order, duplicates included. DNs stay as text and
    are left for the directory to judge.
    """

    MAX_LENGTH = 1024 * 1024

    def lineLengthExceeded(self, line):
        raise LDIFLineTooLongError(len(line))

    def state_WAIT_FOR_MOD_SPEC(self, line):
        if line == b"":
            self._emit(ChangeType.MODIFY, operations=self.modifications)
            return
        super().state_WAIT_FOR_MOD_SPEC(line)

    def state_IN_MOD_SPEC(self, line):
        if line == b"":
            raise ldifdelta.LDIFDeltaModificationMissingEndDashError(self.dn)

        if line == b"-":
            self.modifications.append(
                AttributeOperation(
                    kind=_MOD_SPECS[self.mod_spec],
                    attribute_name=_text(self.mod_spec_attr),
                    values=self.mod_spec_data,
                )
            )
            del self.mod_spec
            del self.mod_spec_attr
            del self.mod_spec_data
            self.mode = ldifdelta.WAIT_FOR_MOD_SPEC
            return

        key, val = self._parseLine(line)
        # Attribute descriptions are case-insensitive.
        if key.lower() != self.mod_spec_attr.lower():
            raise ldifdelta.LDIFDeltaModificationDifferentAttributeTypeError(
                key, self.mod_spec_attr
            )
        self.mod_spec_data.append(val)

    def state_IN_ADD_ENTRY(self, line):
        if line == b"":
            if not self.data:
                raise ldifdelta.LDIFDeltaAddMissingAttributesError(self.dn)
            self._emit(
                ChangeType.ADD,
                attributes={_text(name): values for name, values in self.data.items()},
            )
            return

        key, val = self._parseLine(line)
        for existing in self.data:
            if existing.lower() == key.lower():
                key = existing
                break
        self.data.setdefault(key, []).append(val)

    def state_IN_DELETE(self, line):
        if line == b"":
            self._emit(ChangeType.DELETE)
            return
        raise ldifdelta.LDIFDeltaDeleteHasJunkAfterChangeTypeError(self.dn, line)

    def _emit(self, change_type, **contents):
        record = ChangeRecord(change_type=change_type, dn=_text(self.dn), **contents)
        self.mode = ldifprotocol.WAIT_FOR_DN
        self.dn = None
        self.data = None
        self.modifications = None
        self.gotEntry(record)


def parse_change_records(content: Union[str, bytes]) -> List[ChangeRecord]:
    """Parse LDIF change records, in file order.

    Content without any record, such as an empty string or only a version
    line, yields an empty list. A DN is not validated here: a malformed one
    is refused by the directory when its record is applied.

    Raises:
        LdifParseError: if the content is not valid LDIF, a record has no
            changetype, or its changetype is not add, delete or modify.
    """
    data = _normalize(content)
    if not data:
        return []

    parser = _ChangeRecordParser()
    records: List[ChangeRecord] = []
    parser.gotEntry = records.append
    try:
        parser.dataReceived(data)
        parser.connectionLost(Failure(error.ConnectionDone()))
    except ldifprotocol.LDIFParseError as e:
        raise LdifParseError("Invalid LDIF: {err}".format(err=e)) from e
    except NotImplementedError as e:
        raise LdifParseError(
            "Invalid LDIF: only add, delete and modify change records are supported"
        ) from e
    except (AssertionError, UnicodeDecodeError) as e:
        raise LdifParseError("Invalid LDIF: {err}".format(err=e)) from e

    logger.debug("Parsed %d LDIF change record(s)", len(records))
    return records


def _normalize(content: Union[str, bytes]) -> bytes:
    """Line-ending and whitespace normalization the parser depends on.

    The parser only sees complete lines, and a record is only emitted once
    the blank line that ends it has been received.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    content = content.replace(b"\r\n", b"\n")
    content = content.lstrip(b"\n")
    if not content.strip():
        return b""
    return content.rstrip(b"\n") + b"\n\n"


def _text(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
