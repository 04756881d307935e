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

from typing import Optional


class GatewayError(Exception):
    """Base class for every failure the gateway reports to its caller.

    ``error_code`` and ``http_status`` describe how the HTTP layer renders
    the failure. Subclasses that do not belong to a caller mistake leave
    ``error_code`` as None so the route can pick its own (``SEARCH_ERROR``
    or ``MODIFY_ERROR``).
    """

    error_code: Optional[str] = None
    http_status: int = 500

    @property
    def details(self) -> str:
        """Name of the class that actually failed, for the error payload."""
        cause = self.__cause__
        if cause is not None:
            return type(cause).__name__
        return type(self).__name__


class ValidationError(GatewayError):
    """Raised when the caller's request is malformed"""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class InvalidUri(ValidationError):
    """Raised when an LDAP URI has no usable scheme, host or port"""

    pass


class LdifParseError(ValidationError):
    """Raised when LDIF content cannot be parsed into change records"""

    pass


class DirectoryConnectionError(GatewayError):
    """Raised when the transport to the directory cannot be established"""

    pass


class TrustStoreError(GatewayError):
    """Raised when the configured trust store cannot be read or parsed"""

    pass


class BindError(GatewayError):
    """Raised when the directory rejects the supplied credentials"""

    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class SearchError(GatewayError):
    """Raised when the directory reports a failed search"""

    pass


class ModifyError(GatewayError):
    """Raised for protocol-level faults while modifying an entry.

    A directory answering "no" to a modification is not a fault and never
    raises this.
    """

    pass


class ConfigError(Exception):
    """Raised when the gateway configuration is invalid"""

    pass
