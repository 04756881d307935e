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
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import ldap3

from ldap_gateway.errors import ValidationError

AttributeValue = Union[str, List[str]]

DEFAULT_FILTER = "(objectClass=*)"

MODIFY_SUCCESS_MESSAGE = "Modification successful"
BATCH_SUCCESS_MESSAGE = "All modifications successful"


class SearchScope(enum.Enum):
    BASE = "base"
    ONE = "one"
    SUB = "sub"

    @property
    def ldap_scope(self) -> str:
        return _LDAP3_SCOPES[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "SearchScope":
        """Map a caller-supplied scope string to a SearchScope.

        "base" and "one" are matched case-insensitively. Everything else,
        including unknown strings and None, falls back to SUB. Callers
        have come to rely on that, so unknown scopes are deliberately not
        rejected even though it hides typos.
        """
        if value:
            normalized = value.strip().lower()
            if normalized == cls.BASE.value:
                return cls.BASE
            if normalized == cls.ONE.value:
                return cls.ONE
        return FALLBACK_SCOPE


FALLBACK_SCOPE = SearchScope.SUB

_LDAP3_SCOPES = {
    SearchScope.BASE: ldap3.BASE,
    SearchScope.ONE: ldap3.LEVEL,
    SearchScope.SUB: ldap3.SUBTREE,
}


class ModificationKind(enum.Enum):
    ADD = "add"
    DELETE = "delete"
    REPLACE = "replace"

    @property
    def ldap_operation(self) -> str:
        return _LDAP3_MODIFY_OPERATIONS[self]

    @classmethod
    def parse(cls, value: Any) -> "ModificationKind":
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(
            "Invalid modification operation: {op}".format(op=value)
        )


_LDAP3_MODIFY_OPERATIONS = {
    ModificationKind.ADD: ldap3.MODIFY_ADD,
    ModificationKind.DELETE: ldap3.MODIFY_DELETE,
    ModificationKind.REPLACE: ldap3.MODIFY_REPLACE,
}


@dataclass(frozen=True)
class Credentials:
    principal: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class SearchSpec:
    target: str
    base: str = ""
    filter: str = DEFAULT_FILTER
    scope: Optional[str] = SearchScope.SUB.value

    @property
    def resolved_scope(self) -> SearchScope:
        return SearchScope.parse(self.scope)


@dataclass
class NormalizedEntry:
    distinguished_name: str
    attributes: Dict[str, AttributeValue]

    def values(self, name: str) -> List[str]:
        """All values of ``name`` as a list, whatever its collapsed form."""
        value = self.attributes.get(name)
        if value is None:
            return []
        if isinstance(value, list):
            return list(value)
        return [value]

    def as_json(self) -> Dict[str, Any]:
        return {"dn": self.distinguished_name, "attributes": self.attributes}


@dataclass
class AttributeOperation:
    kind: ModificationKind
    attribute_name: str
    values: Sequence[Union[str, bytes]] = ()


@dataclass(frozen=True)
class DirectoryResult:
    code: int
    description: str = ""
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.code == 0

    @property
    def diagnostic(self) -> str:
        """The server's diagnostic text, or the result name when it sent none."""
        return self.message or self.description


@dataclass
class ModifyOutcome:
    succeeded: bool
    message: str
    distinguished_name: str

    def as_json(self) -> Dict[str, Any]:
        return {
            "success": self.succeeded,
            "message": self.message,
            "dn": self.distinguished_name,
        }


@dataclass
class BatchOutcome:
    succeeded: bool
    message: str
    last_distinguished_name: str = ""

    def as_json(self) -> Dict[str, Any]:
        return {
            "success": self.succeeded,
            "message": self.message,
            "dn": self.last_distinguished_name,
        }
