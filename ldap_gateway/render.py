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

import json
from typing import Any, Dict, Iterable, List, Optional

from ldap_gateway.errors import GatewayError
from ldap_gateway.models import NormalizedEntry

LDIF_CONTENT_TYPE = b"application/ldif"
JSON_CONTENT_TYPE = b"application/json"


def entries_as_json(entries: List[NormalizedEntry]) -> Dict[str, Any]:
    return {
        "entries": [entry.as_json() for entry in entries],
        "count": len(entries),
    }


def entries_as_ldif(entries: Iterable[NormalizedEntry]) -> str:
    """Render entries as LDIF content records.

    Every value is written as ``name: value``, one line per value, and each
    entry is followed by a single blank line.
    """
    lines = []
    for entry in entries:
        lines.append("dn: {dn}\n".format(dn=entry.distinguished_name))
        for name in entry.attributes:
            for value in entry.values(name):
                lines.append("{name}: {value}\n".format(name=name, value=value))
        lines.append("\n")
    return "".join(lines)


def error_payload(
    error: str, message: str, code: int, details: Optional[str] = None
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": error, "message": message, "code": code}
    if details:
        payload["details"] = details
    return payload


def gateway_error_payload(
    e: GatewayError, fallback_code: str, message_prefix: str
) -> Dict[str, Any]:
    """Error payload for a failed operation.

    Caller mistakes (validation, bad credentials) keep their own code and
    message. Anything else is reported under the route's ``fallback_code``.
    """
    if e.error_code is not None:
        return error_payload(e.error_code, str(e), e.http_status, e.details)
    return error_payload(
        fallback_code, message_prefix + str(e), e.http_status, e.details
    )


def as_json_bytes(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")
