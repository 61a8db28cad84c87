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

import ipaddress
import os
import socket
import sys

import bitmath
import psutil

from bases.Kernel import getLogger

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)


# flush is required when stdout is redirected (services, containers).
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
        else:
            print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(
        "{value:.%df}{%s}" % (decimal, 'unit_plural' if plural else 'unit')
    )

    if not sizeStr.endswith('Byte') and not sizeStr.endswith('Bytes') and not sizeStr.endswith('Bits'):
        return sizeStr.replace('B', '').upper()
    else:
        return sizeStr.replace('Byte', ' Byte').replace('Bit', ' Byte')


def getExternalIP():
    """
    Find the IPv4 address other hosts on the network can reach us at.

    Returns:
        str or None: IPv4 address of the first interface that is up and not a
        loopback, None when not connected.
    """
    interfaceStats = psutil.net_if_stats()

    for interface, addresses in psutil.net_if_addrs().items():
        stats = interfaceStats.get(interface)
        if not stats or not stats.isup:
            continue

        for address in addresses:
            if address.family != socket.AF_INET:
                continue

            if ipaddress.ip_address(address.address).is_loopback:
                continue

            return address.address

    logger.debug("No network interface with an IPv4 address is up")
    return None


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else: # only errorPrefix without e?
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)

    if isinstance(e, BaseException):
        logger.exception(e)
    else:
        logger.error(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


# Helper functions for environment variable configuration
def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default
