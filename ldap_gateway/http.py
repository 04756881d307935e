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

"""Twisted Web resources exposing the gateway over HTTP.

    /api/search          GET, POST   JSON {entries, count}
    /api/search/ldif     GET, POST   application/ldif
    /api/modify          POST        JSON {success, message, dn}
    /api/modify/ldif     POST        JSON {success, message, dn}

Gateway calls block on the directory, so they are run in the reactor's
thread pool.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from twisted.internet import threads
from twisted.python.failure import Failure
from twisted.web import resource, server

from ldap_gateway import render
from ldap_gateway.errors import GatewayError, ValidationError
from ldap_gateway.gateway import LdapGateway
from ldap_gateway.models import (
    DEFAULT_FILTER,
    AttributeOperation,
    Credentials,
    ModificationKind,
    SearchSpec,
)

logger = logging.getLogger(__name__)

AUTH_REALM = b'Basic realm="ldap-gateway"'

SEARCH_ERROR = "SEARCH_ERROR"
MODIFY_ERROR = "MODIFY_ERROR"
SEARCH_ERROR_PREFIX = "Failed to perform LDAP search: "
MODIFY_ERROR_PREFIX = "Failed to perform LDAP modification: "


def build_resource(gateway: LdapGateway) -> resource.Resource:
    """The root resource, with every route of the gateway under /api."""
    search = SearchResource(gateway)
    search.putChild(b"ldif", SearchLdifResource(gateway))

    modify = ModifyResource(gateway)
    modify.putChild(b"ldif", ModifyLdifResource(gateway))

    api = resource.Resource()
    api.putChild(b"search", search)
    api.putChild(b"modify", modify)

    root = resource.Resource()
    root.putChild(b"api", api)
    return root


def build_site(gateway: LdapGateway) -> server.Site:
    return server.Site(build_resource(gateway))


class _GatewayResource(resource.Resource):
    """Common plumbing: credential extraction, dispatch to a worker thread
    and rendering of results or errors."""

    error_code = SEARCH_ERROR
    error_prefix = SEARCH_ERROR_PREFIX

    def __init__(self, gateway: LdapGateway):
        resource.Resource.__init__(self)
        self.gateway = gateway

    def _dispatch(
        self,
        request: server.Request,
        parse: Callable[[server.Request], Dict[str, Any]],
        call: Callable[..., Any],
        write_result: Callable[[server.Request, Any], None],
    ):
        credentials = _credentials(request)
        if credentials is None:
            return _error_response(
                request,
                render.error_payload(
                    "AUTHENTICATION_ERROR", "Authentication credentials are required", 401
                ),
            )

        try:
            kwargs = parse(request)
        except GatewayError as e:
            return _error_response(
                request, render.gateway_error_payload(e, self.error_code, self.error_prefix)
            )

        client_gone: List[Failure] = []
        request.notifyFinish().addErrback(client_gone.append)

        d = threads.deferToThread(call, credentials=credentials, **kwargs)
        d.addCallback(self._result_written, request, client_gone, write_result)
        d.addErrback(self._failure_written, request, client_gone)
        return server.NOT_DONE_YET

    def _result_written(self, result, request, client_gone, write_result):
        if client_gone:
            logger.debug("Client went away before %s completed", request.path)
            return
        write_result(request, result)

    def _failure_written(self, failure: Failure, request, client_gone):
        if failure.check(GatewayError):
            e = failure.value
            if e.error_code is None:
                logger.warning("%s %s failed: %s", request.method, request.path, e)
            payload = render.gateway_error_payload(
                e, self.error_code, self.error_prefix
            )
        else:
            logger.error(
                "Unexpected error handling %s %s",
                request.method,
                request.path,
                exc_info=(failure.type, failure.value, failure.getTracebackObject()),
            )
            payload = render.error_payload(
                "INTERNAL_ERROR",
                "An unexpected error occurred: " + failure.getErrorMessage(),
                500,
                failure.type.__name__,
            )

        if client_gone:
            return
        request.write(_error_response(request, payload))
        request.finish()


class SearchResource(_GatewayResource):
    def render_GET(self, request):
        return self._dispatch(
            request, _search_from_query, self.gateway.search, _write_entries
        )

    def render_POST(self, request):
        return self._dispatch(
            request, _search_from_body, self.gateway.search, _write_entries
        )


class SearchLdifResource(_GatewayResource):
    def render_GET(self, request):
        return self._dispatch(
            request, _search_from_query, self.gateway.search_to_ldif, _write_ldif
        )

    def render_POST(self, request):
        return self._dispatch(
            request, _search_from_body, self.gateway.search_to_ldif, _write_ldif
        )


class ModifyResource(_GatewayResource):
    error_code = MODIFY_ERROR
    error_prefix = MODIFY_ERROR_PREFIX

    def render_POST(self, request):
        return self._dispatch(
            request, _modify_from_body, self.gateway.modify, _write_outcome
        )


class ModifyLdifResource(_GatewayResource):
    error_code = MODIFY_ERROR
    error_prefix = MODIFY_ERROR_PREFIX

    def render_POST(self, request):
        return self._dispatch(
            request, _ldif_from_body, self.gateway.apply_ldif, _write_outcome
        )


def _credentials(request: server.Request) -> Optional[Credentials]:
    """Basic auth credentials, split at the first colon by Twisted.

    Passed through unmodified: the directory is the only judge of them.
    """
    try:
        principal = request.getUser().decode("utf-8")
        secret = request.getPassword().decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not principal or not secret:
        return None
    return Credentials(principal, secret)


def _search_from_query(request: server.Request) -> Dict[str, Any]:
    return {"spec": _search_spec(_query_params(request))}


def _search_from_body(request: server.Request) -> Dict[str, Any]:
    return {"spec": _search_spec(_json_body(request))}


def _search_spec(params: Dict[str, Any]) -> SearchSpec:
    return SearchSpec(
        target=_string_field(params, "uri") or "",
        base=_string_field(params, "base") or "",
        filter=(_string_field(params, "filter") or "").strip() or DEFAULT_FILTER,
        scope=_string_field(params, "scope"),
    )


def _modify_from_body(request: server.Request) -> Dict[str, Any]:
    body = _json_body(request)
    modifications = body.get("modifications")
    if modifications is not None and not isinstance(modifications, list):
        raise ValidationError("'modifications' must be a list")

    return {
        "dn": _string_field(body, "dn") or "",
        "operations": [_operation(entry) for entry in modifications or []],
        "target": _string_field(body, "uri") or "",
    }


def _operation(entry: Any) -> AttributeOperation:
    if not isinstance(entry, dict):
        raise ValidationError("Every modification must be an object")

    values = entry.get("values")
    if values is None:
        values = []
    elif isinstance(values, str):
        values = [values]
    elif not isinstance(values, list) or not all(
        isinstance(value, str) for value in values
    ):
        raise ValidationError("'values' must be a list of strings")

    return AttributeOperation(
        kind=ModificationKind.parse(entry.get("operation")),
        attribute_name=_string_field(entry, "attribute") or "",
        values=values,
    )


def _ldif_from_body(request: server.Request) -> Dict[str, Any]:
    try:
        content = request.content.read().decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("LDIF content must be UTF-8 encoded") from e
    return {
        "content": content,
        "target": _string_field(_query_params(request), "uri") or "",
    }


def _query_params(request: server.Request) -> Dict[str, Any]:
    params = {}
    for key, values in request.args.items():
        try:
            params[key.decode("utf-8")] = values[0].decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("Query parameters must be UTF-8 encoded") from e
    return params


def _json_body(request: server.Request) -> Dict[str, Any]:
    try:
        body = json.loads(request.content.read().decode("utf-8"))
    except ValueError as e:
        raise ValidationError("Malformed JSON request body: {err}".format(err=e)) from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _string_field(params: Dict[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is not None and not isinstance(value, str):
        raise ValidationError("'{name}' must be a string".format(name=name))
    return value


def _write_entries(request: server.Request, entries) -> None:
    _write(request, 200, render.JSON_CONTENT_TYPE, render.as_json_bytes(
        render.entries_as_json(entries)
    ))


def _write_ldif(request: server.Request, ldif: str) -> None:
    _write(request, 200, render.LDIF_CONTENT_TYPE, ldif.encode("utf-8"))


def _write_outcome(request: server.Request, outcome) -> None:
    _write(request, 200, render.JSON_CONTENT_TYPE, render.as_json_bytes(
        outcome.as_json()
    ))


def _write(request: server.Request, code: int, content_type: bytes, body: bytes):
    request.setResponseCode(code)
    request.setHeader(b"Content-Type", content_type)
    request.write(body)
    request.finish()


def _error_response(request: server.Request, payload: Dict[str, Any]) -> bytes:
    """Set the status and headers of an error and return its body."""
    request.setResponseCode(payload["code"])
    request.setHeader(b"Content-Type", render.JSON_CONTENT_TYPE)
    if payload["code"] == 401:
        request.setHeader(b"WWW-Authenticate", AUTH_REALM)
    return render.as_json_bytes(payload)
