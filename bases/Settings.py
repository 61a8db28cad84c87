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

import os
import json
import tempfile
import dataclasses

from dataclasses import dataclass
from typing import Optional

from bases.Kernel import getLogger

DEFAULT_SERVER_PORT = 8080
DEFAULT_SECURE_PORT = 443
DEFAULT_BASE_DIR = '.'

CONFIG_FILE_NAME = '.upduck.json'
USERS_FILE_NAME = '.upduck-users.json'

AUTH_REALM = 'Upduck login'

# Transfer chunk size (256 KiB) - used for file and archive streaming
TRANSFER_CHUNK_SIZE = int(os.getenv('TRANSFER_CHUNK_SIZE', 256 * 1024))

DUCKDNS_TIMEOUT = 10 # Seconds

logger = getLogger(__name__)


class UpduckError(Exception):
    """Base exception for upduck errors"""
    pass


class ConfigError(UpduckError):
    """Raised when configuration cannot be loaded or is invalid (fatal at startup)"""
    pass


class PathEscapeError(UpduckError):
    """Raised when a request path would resolve outside the server root"""
    pass


class ArchiveCancelledError(UpduckError):
    """Raised when an archive stream is cancelled between two files"""
    pass


class CredentialStoreError(UpduckError):
    """Raised when the credential file cannot be read or a user is invalid"""
    pass


class DuckDNSError(UpduckError):
    """Raised when DuckDNS refuses or fails the IP update"""

    def __init__(self, message, statusCode=None):
        super().__init__(message)
        self.statusCode = statusCode


@dataclass(frozen=True)
class ServerConfig:
    """
    Immutable server configuration, built once at startup and handed to every
    component that needs it.
    """
    baseDir: str = DEFAULT_BASE_DIR
    serverPort: int = DEFAULT_SERVER_PORT
    disallowListings: bool = False
    securePort: int = DEFAULT_SECURE_PORT

    duckDNSToken: str = ''
    duckDNSSite: str = ''
    letsEncryptEmail: str = ''

    certFile: Optional[str] = None
    keyFile: Optional[str] = None

    archiveTimeout: float = 0 # Seconds, 0 means no timeout

    # Saved config file keys
    FIELD_KEYS = {
        'serverPort': 'server_port',
        'baseDir': 'dir',
        'disallowListings': 'disallow_listings',
        'duckDNSToken': 'duck_dns_token',
        'duckDNSSite': 'duck_dns_site',
        'letsEncryptEmail': 'lets_encrypt_email',
        'securePort': 'secure_port',
        'certFile': 'cert_file',
        'keyFile': 'key_file',
        'archiveTimeout': 'archive_timeout',
    }

    @property
    def hasSecureSite(self):
        return bool(self.duckDNSToken and self.duckDNSSite)

    @property
    def secureSiteDomain(self):
        return f'{self.duckDNSSite}.duckdns.org' if self.duckDNSSite else None

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)

    def toDict(self):
        return {key: getattr(self, field) for field, key in self.FIELD_KEYS.items()}

    @classmethod
    def fromDict(cls, data, base=None):
        """
        Build a config from a saved dict. Missing keys keep the value of base (or the
        defaults), unknown keys are ignored.
        """
        if not isinstance(data, dict):
            raise ConfigError(f'Config must be a JSON object, got {type(data).__name__}')

        changes = {field: data[key] for field, key in cls.FIELD_KEYS.items() if key in data}

        try:
            for field in ('serverPort', 'securePort'):
                if field in changes:
                    changes[field] = int(changes[field])
            if 'archiveTimeout' in changes:
                changes['archiveTimeout'] = float(changes['archiveTimeout'] or 0)
        except (TypeError, ValueError) as e:
            raise ConfigError(f'Invalid config value: {e}') from e

        if 'disallowListings' in changes:
            changes['disallowListings'] = bool(changes['disallowListings'])

        return dataclasses.replace(base or cls(), **changes)


def loadConfigFile(path) -> Optional[ServerConfig]:
    """
    Load a saved configuration.

    Returns:
        ServerConfig, or None when the file does not exist.

    Raises:
        ConfigError: If the file is unreadable or not valid JSON.
    """
    if not os.path.exists(path):
        return None

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        raise ConfigError(f'Cannot load config file {path}: {e}') from e

    return ServerConfig.fromDict(data)


def saveConfigFile(config: ServerConfig, path):
    """Write config to path atomically, creating the parent directory."""
    configDir = os.path.dirname(os.path.abspath(path))
    os.makedirs(configDir, exist_ok=True)

    fd, tempPath = tempfile.mkstemp(dir=configDir, prefix='.upduck-', suffix='.temp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(config.toDict(), f, indent='\t')
            f.write('\n')
        os.replace(tempPath, path)
    except BaseException:
        if os.path.exists(tempPath):
            os.remove(tempPath)
        raise

    logger.debug(f'Saved config file to {path}')
