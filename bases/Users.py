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

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import tempfile
import threading

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from bases.Kernel import getLogger
from bases.Settings import CredentialStoreError

SALT_LENGTH = 128 # bytes

logger = getLogger(__name__)


def generateSalt() -> bytes:
    return secrets.token_bytes(SALT_LENGTH)


def hashPassword(password: str, salt: bytes) -> str:
    """Hex encoded SHA-256 of salt followed by the UTF-8 password."""
    return hashlib.sha256(salt + password.encode('utf-8')).hexdigest()


class ReadWriteLock:
    """
    Shared/exclusive lock. Any number of readers may hold it at once, a writer holds it
    alone. Waiting writers block new readers so mutations are not starved.
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waitingWriters = 0

    def acquireRead(self):
        with self._condition:
            while self._writer or self._waitingWriters:
                self._condition.wait()
            self._readers += 1

    def releaseRead(self):
        with self._condition:
            self._readers -= 1
            if not self._readers:
                self._condition.notify_all()

    def acquireWrite(self):
        with self._condition:
            self._waitingWriters += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._waitingWriters -= 1
            self._writer = True

    def releaseWrite(self):
        with self._condition:
            self._writer = False
            self._condition.notify_all()

    @contextmanager
    def reading(self):
        self.acquireRead()
        try:
            yield
        finally:
            self.releaseRead()

    @contextmanager
    def writing(self):
        self.acquireWrite()
        try:
            yield
        finally:
            self.releaseWrite()


@dataclass(frozen=True)
class Credential:
    username: str
    passwordHash: str
    salt: bytes

    @classmethod
    def create(cls, username, password):
        salt = generateSalt()
        return cls(username=username, passwordHash=hashPassword(password, salt), salt=salt)

    def toDict(self):
        return {'password_hash': self.passwordHash, 'password_salt': base64.b64encode(self.salt).decode('ascii')}

    @classmethod
    def fromDict(cls, username, data):
        try:
            return cls(
                username=username,
                passwordHash=str(data['password_hash']),
                salt=base64.b64decode(data.get('password_salt') or '', validate=True),
            )
        except (KeyError, TypeError, AttributeError, binascii.Error) as e:
            raise CredentialStoreError(f'Invalid credential for user {username!r}: {e}') from e


class CredentialStore:
    """
    Usernames mapped to salted password hashes, persisted as JSON.

    The in-memory mapping is the source of truth while the process runs. It is only
    reachable through the methods below, which take the shared lock to read and the
    exclusive lock to mutate and save.

    File format:
        {"users": {"<name>": {"password_hash": "<hex>", "password_salt": "<base64>"}}}
    """

    def __init__(self, path: str, credentials: Optional[Dict[str, Credential]] = None):
        self.path = path
        self._credentials = dict(credentials or {})
        self._lock = ReadWriteLock()

    @classmethod
    def load(cls, path: str) -> 'CredentialStore':
        """
        Load the store from path. A missing file is an empty store.

        Raises:
            CredentialStoreError: If the file exists but cannot be read or parsed.
        """
        if not os.path.exists(path):
            logger.debug(f'No credential file at {path}, authentication disabled')
            return cls(path)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            raise CredentialStoreError(f'Cannot load credential file {path}: {e}') from e

        users = data.get('users') if isinstance(data, dict) else None
        if users is None:
            users = {}
        if not isinstance(users, dict):
            raise CredentialStoreError(f'Credential file {path} has no valid "users" object')

        credentials = {name: Credential.fromDict(name, value) for name, value in users.items()}
        logger.debug(f'Loaded {len(credentials)} users from {path}')
        return cls(path, credentials)

    def __len__(self):
        with self._lock.reading():
            return len(self._credentials)

    def needAuth(self) -> bool:
        with self._lock.reading():
            return bool(self._credentials)

    def usernames(self) -> List[str]:
        with self._lock.reading():
            return sorted(self._credentials)

    def validate(self, username: str, password: str) -> bool:
        """
        True only for a known username with its exact password. Unknown usernames return
        False without hashing; the digest comparison itself is constant-time.
        """
        with self._lock.reading():
            credential = self._credentials.get(username)

        if credential is None:
            return False

        candidate = hashPassword(password, credential.salt)
        return hmac.compare_digest(candidate.encode('ascii'), credential.passwordHash.encode('ascii', 'replace'))

    @staticmethod
    def _checkUsername(username):
        if not username or ':' in username:
            raise CredentialStoreError(f'Invalid username {username!r}: must be non-empty and must not contain ":"')

    def addUser(self, username: str, password: str):
        """Create a user, or replace the password of an existing one, then save."""
        self._checkUsername(username)
        credential = Credential.create(username, password)

        with self._lock.writing():
            self._credentials[username] = credential
            self._saveLocked()

    def removeUser(self, username: str) -> bool:
        with self._lock.writing():
            if username not in self._credentials:
                return False

            del self._credentials[username]
            self._saveLocked()
            return True

    def resetUsers(self):
        with self._lock.writing():
            self._credentials.clear()
            self._saveLocked()

    def save(self):
        with self._lock.writing():
            self._saveLocked()

    def _saveLocked(self):
        """
        Atomically replace the credential file: write a temp file in the same
        directory, fsync, then rename it over the target. The previous file is left
        untouched when anything before the rename fails.
        """
        data = {'users': {name: credential.toDict() for name, credential in self._credentials.items()}}

        fileDir = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(fileDir, exist_ok=True)

        # mkstemp creates the file with 0600 permissions.
        fd, tempPath = tempfile.mkstemp(dir=fileDir, prefix='.upduck-users-', suffix='.temp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tempPath, self.path)
        except BaseException:
            if os.path.exists(tempPath):
                os.remove(tempPath)
            raise

        logger.debug(f'Saved {len(self._credentials)} users to {self.path}')
