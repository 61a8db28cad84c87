#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: AGPL-3.0-or-later
#
# Upduck - A simple HTTP and HTTPS file server
# Copyright (C) 2024-2025 Upduck contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
"""
Public HTTPS site on <site>.duckdns.org.

DuckDNS is told our public IP when the server starts, then a second server with the
same request handling is started with TLS on the secure port. The certificate and
key are supplied as PEM files.
"""

import ssl

import requests

from bases.Kernel import getLogger, UpduckEvent
from bases.Settings import DUCKDNS_TIMEOUT, ConfigError, DuckDNSError

DUCKDNS_UPDATE_URL = 'https://www.duckdns.org/update'

logger = getLogger(__name__)


def pingDuckDNS(site, token, timeout=DUCKDNS_TIMEOUT):
    """
    Tell DuckDNS to point site at the IP this request comes from.

    Returns:
        str: The response body ('OK' on success)

    Raises:
        DuckDNSError: On network failure, a status outside 200-399 or a 'KO' answer.
    """
    try:
        response = requests.get(DUCKDNS_UPDATE_URL, params={'domains': site, 'token': token}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise DuckDNSError(f'Cannot reach DuckDNS: {e}') from e

    if not (200 <= response.status_code < 400):
        raise DuckDNSError(f'DuckDNS answered with status {response.status_code}', response.status_code)

    body = response.text.strip()
    if body.upper().startswith('KO'):
        raise DuckDNSError('DuckDNS refused the update, check your site and token', response.status_code)

    logger.debug(f'DuckDNS update for {site}: {body}')
    return body


def createSSLContext(certFile, keyFile):
    """
    Raises:
        ConfigError: If the certificate or key cannot be loaded.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    try:
        context.load_cert_chain(certfile=certFile, keyfile=keyFile)
    except OSError as e:
        raise ConfigError(f'Cannot load TLS certificate {certFile} / key {keyFile}: {e}') from e

    return context


class SecureSiteRunner:

    def __init__(self):
        self.server = None

    def onServerStarted(self, config=None, serverFactory=None, **kwargs):
        if config is None or not config.hasSecureSite:
            return

        logger.info("Checking in with DuckDNS")
        try:
            pingDuckDNS(config.duckDNSSite, config.duckDNSToken)
        except DuckDNSError as e:
            logger.warning(f"[Warning] Error while telling DuckDNS our IP address: {e}")

        if not (config.certFile and config.keyFile):
            logger.warning(
                f"No certificate for {config.secureSiteDomain}, HTTPS server not started. "
                f"Get one (e.g. from Let's Encrypt) and pass it with --cert and --key."
            )
            return

        sslContext = createSSLContext(config.certFile, config.keyFile)
        self.server = serverFactory(port=config.securePort, sslContext=sslContext)
        self.server.start()

        logger.info(
            f"Public HTTPS server listening on port {config.securePort} - access it over the external port "
            f"configured in your router on {config.secureSiteDomain}"
        )

    def onServerStopping(self, **kwargs):
        if self.server:
            self.server.stop()
            self.server = None


def load():
    """Load function called by AddonsManager - register for server lifecycle events"""
    runner = SecureSiteRunner()

    UpduckEvent.serverStarted.subscribe(runner.onServerStarted)
    UpduckEvent.serverStopping.subscribe(runner.onServerStopping)
