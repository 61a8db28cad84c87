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
import shutil
import tempfile
import time
import unittest

from bases.Server import createServer
from bases.Settings import ServerConfig
from bases.Users import CredentialStore


# ---------------------------
# File I/O helpers
# ---------------------------
def writeFile(path, content=b''):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = 'wb' if isinstance(content, bytes) else 'w'
    with open(path, mode) as f:
        f.write(content)


def setMTime(path, mtime):
    os.utime(path, (mtime, mtime))


# ---------------------------
# Base test class
# ---------------------------
class UpduckTestBase(unittest.TestCase):
    """
    Runs a real server on 127.0.0.1 with an ephemeral port, serving a fresh
    temporary directory. The credential file lives in its own temporary directory.
    """

    disallowListings = False
    archiveTimeout = 0

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempDir, True)

        self.root = os.path.join(self.tempDir, 'srv')
        os.makedirs(self.root)

        self.usersPath = os.path.join(self.tempDir, 'config', '.upduck-users.json')
        self.userStore = CredentialStore.load(self.usersPath)

        self.populate()

        self.config = ServerConfig(
            baseDir=self.root,
            serverPort=0,
            disallowListings=self.disallowListings,
            archiveTimeout=self.archiveTimeout,
        )
        self.server = None

    def tearDown(self):
        if self.server:
            self.server.stop()
            self.server = None

    def populate(self):
        """Override to create files below self.root before the server starts."""

    def startServer(self, **kws):
        self.server = createServer(self.config, self.userStore, host='127.0.0.1', **kws)
        self.server.start()
        self.baseURL = self.server.url
        return self.server

    def path(self, *parts):
        return os.path.join(self.root, *parts)

    def waitFor(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.05)
        return predicate()
