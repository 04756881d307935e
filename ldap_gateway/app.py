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

import dataclasses
import logging
import sys

from twisted.internet import defer
from twisted.internet.endpoints import serverFromString
from twisted.python import log, usage

from ldap_gateway import __version__
from ldap_gateway.config import GatewayConfig, load_config
from ldap_gateway.connection import ConnectionFactory
from ldap_gateway.errors import ConfigError, GatewayError
from ldap_gateway.gateway import LdapGateway
from ldap_gateway.http import build_site

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Options(usage.Options):
    """HTTP gateway to LDAP directories"""

    synopsis = "ldap-gateway [--config FILE] [--listen ENDPOINT ...] [--log-level LEVEL]"

    optParameters = [
        ["config", "c", None, "YAML configuration file"],
        ["log-level", None, None, "Logging level, overrides the configuration"],
    ]

    def __init__(self):
        usage.Options.__init__(self)
        self["listen"] = []

    def opt_listen(self, description):
        """Twisted endpoint to serve HTTP on, e.g. tcp:8080. May be repeated.
        Replaces the configured listeners."""
        self["listen"].append(description)

    opt_l = opt_listen

    def opt_version(self):
        """Display version and exit"""
        print("ldap-gateway {}".format(__version__))
        sys.exit(0)

    def postOptions(self):
        level = self["log-level"]
        if level is not None and not isinstance(
            logging.getLevelName(level.upper()), int
        ):
            raise usage.UsageError("Unknown log level: {}".format(level))


def build_config(options: Options) -> GatewayConfig:
    """The configuration file, with command line overrides applied."""
    config = load_config(options["config"]) if options["config"] else GatewayConfig()

    overrides = {}
    if options["listen"]:
        overrides["listeners"] = tuple(options["listen"])
    if options["log-level"]:
        overrides["log_level"] = options["log-level"].upper()
    return dataclasses.replace(config, **overrides)


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    observer = log.PythonLoggingObserver(loggerName="twisted")
    observer.start()


def start(config: GatewayConfig, reactor) -> defer.Deferred:
    """Start serving on every configured listener.

    Returns a Deferred firing with the listening ports.

    Raises:
        TrustStoreError: if the configured trust store cannot be loaded.
    """
    factory = ConnectionFactory(config.trust, config.connect_timeout)
    site = build_site(LdapGateway(factory))

    listening = []
    for description in config.listeners:
        d = serverFromString(reactor, description).listen(site)
        d.addCallback(_listening, description)
        listening.append(d)
    return defer.gatherResults(listening, consumeErrors=True)


def _listening(port, description):
    logger.info("Listening for HTTP requests on %s", description)
    return port


def run(config: GatewayConfig) -> int:
    from twisted.internet import reactor

    exit_status = []

    def _failed(failure):
        logger.error("Unable to start listening: %s", failure.value)
        exit_status.append(1)
        reactor.stop()

    setup_logging(config.log_level)
    logger.info("Starting ldap-gateway %s", __version__)

    try:
        d = start(config, reactor)
    except GatewayError as e:
        logger.error("Unable to start: %s", e)
        return 1
    d.addErrback(_failed)

    reactor.run()
    return exit_status[0] if exit_status else 0


def console_script():
    try:
        options = Options()
        options.parseOptions()
    except usage.UsageError as ue:
        sys.stderr.write("{}: {}\n".format(sys.argv[0], ue))
        sys.exit(1)

    try:
        config = build_config(options)
    except ConfigError as e:
        sys.stderr.write("{}: {}\n".format(sys.argv[0], e))
        sys.exit(1)

    sys.exit(run(config))


if __name__ == "__main__":
    console_script()
