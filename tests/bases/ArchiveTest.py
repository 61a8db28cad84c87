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

import gzip
import io
import os
import shutil
import tarfile
import tempfile
import time
import unittest
import zipfile

from unittest.mock import patch

from bases.Archive import ArchiveFormat, ArchiveStreamer, CancelToken
from bases.FileSystems import LocalFileSystem
from bases.Settings import ArchiveCancelledError

FILES = {
    'a.txt': b'abcd',
    'sub/b.txt': b'0123456789',
    'sub/deeper/c.bin': bytes(range(256)) * 64,
    'empty': b'',
}


class UnseekableOutput(io.RawIOBase):
    """Write-only sink without seek()/tell(), like a socket."""

    def __init__(self):
        self.buffer = bytearray()

    def writable(self):
        return True

    def write(self, b):
        self.buffer.extend(b)
        return len(b)


class FailingOutput(UnseekableOutput):

    def __init__(self, failAfter):
        super().__init__()
        self.failAfter = failAfter

    def write(self, b):
        if len(self.buffer) + len(b) > self.failAfter:
            raise BrokenPipeError('client went away')
        return super().write(b)


class ArchiveFormatTest(unittest.TestCase):

    def testFromName(self):
        self.assertIs(ArchiveFormat.fromName('zip'), ArchiveFormat.ZIP)
        self.assertIs(ArchiveFormat.fromName('TAR'), ArchiveFormat.TAR)
        self.assertIs(ArchiveFormat.fromName('Tar.Gz'), ArchiveFormat.TAR_GZ)
        self.assertIsNone(ArchiveFormat.fromName('rar'))
        self.assertIsNone(ArchiveFormat.fromName(''))
        self.assertIsNone(ArchiveFormat.fromName(None))

    def testContentTypes(self):
        self.assertEqual(ArchiveFormat.ZIP.contentType, 'application/zip')
        self.assertEqual(ArchiveFormat.TAR.contentType, 'application/x-tar')
        self.assertEqual(ArchiveFormat.TAR_GZ.contentType, 'application/gzip')
        self.assertEqual(ArchiveFormat.TAR_GZ.extension, 'tar.gz')


class CancelTokenTest(unittest.TestCase):

    def testCancel(self):
        cancelToken = CancelToken()
        self.assertFalse(cancelToken.isCancelled)

        cancelToken.cancel('stop')
        cancelToken.cancel('ignored')

        self.assertTrue(cancelToken.isCancelled)
        self.assertEqual(cancelToken.reason, 'stop')
        with self.assertRaises(ArchiveCancelledError):
            cancelToken.raiseIfCancelled()

    def testDeadline(self):
        self.assertTrue(CancelToken(deadline=time.monotonic() - 1).isCancelled)
        self.assertFalse(CancelToken.withTimeout(60).isCancelled)
        self.assertIsNone(CancelToken.withTimeout(0).deadline)

        expired = CancelToken.withTimeout(0.01)
        time.sleep(0.05)
        self.assertTrue(expired.isCancelled)
        self.assertEqual(expired.reason, 'timeout')

    def testDisconnectCheck(self):
        state = {'gone': False}
        cancelToken = CancelToken(disconnectCheck=lambda: state['gone'])

        self.assertFalse(cancelToken.isCancelled)
        state['gone'] = True
        self.assertTrue(cancelToken.isCancelled)
        self.assertEqual(cancelToken.reason, 'client disconnected')


class ArchiveStreamerTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempDir, True)

        self.root = os.path.join(self.tempDir, 'root')
        for relName, content in FILES.items():
            path = os.path.join(self.root, *relName.split('/'))
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(content)
            os.utime(path, (1700000000, 1700000000))
        os.makedirs(os.path.join(self.root, 'emptyDir'))

        self.fileSystem = LocalFileSystem(self.root)
        self.streamer = ArchiveStreamer(self.fileSystem, chunkSize=1024)

    def stream(self, archiveFormat, resolvedDir=None, cancelToken=None):
        output = UnseekableOutput()
        self.streamer.stream(archiveFormat, output, resolvedDir or self.fileSystem.root, cancelToken)
        return bytes(output.buffer)

    def testZipRoundTrip(self):
        data = self.stream(ArchiveFormat.ZIP)

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            self.assertEqual(sorted(archive.namelist()), sorted(FILES))
            for relName, content in FILES.items():
                self.assertEqual(archive.read(relName), content)
                self.assertEqual(archive.getinfo(relName).compress_type, zipfile.ZIP_STORED)
            self.assertIsNone(archive.testzip())

    def testTarRoundTrip(self):
        data = self.stream(ArchiveFormat.TAR)

        with tarfile.open(fileobj=io.BytesIO(data), mode='r:') as archive:
            members = archive.getmembers()
            self.assertEqual(sorted(m.name for m in members), sorted(FILES))
            for member in members:
                self.assertTrue(member.isfile())
                self.assertEqual(member.mtime, 1700000000)
                self.assertEqual(archive.extractfile(member).read(), FILES[member.name])

    def testTarGzMatchesTar(self):
        tarData = self.stream(ArchiveFormat.TAR)
        tarGzData = self.stream(ArchiveFormat.TAR_GZ)

        self.assertEqual(gzip.decompress(tarGzData), tarData)

    def testSubdirectoryNamesAreRelative(self):
        data = self.stream(ArchiveFormat.ZIP, self.fileSystem.resolve('/sub'))

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            self.assertEqual(archive.namelist(), ['b.txt', 'deeper/c.bin'])

    def testEmptyDirectory(self):
        data = self.stream(ArchiveFormat.ZIP, self.fileSystem.resolve('/emptyDir'))

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            self.assertEqual(archive.namelist(), [])

    def testCancelledBeforeFirstFile(self):
        cancelToken = CancelToken()
        cancelToken.cancel()

        for archiveFormat in ArchiveFormat:
            with self.subTest(archiveFormat=archiveFormat):
                with self.assertRaises(ArchiveCancelledError):
                    self.stream(archiveFormat, cancelToken=cancelToken)

    def testCancelledBetweenFiles(self):
        calls = []

        def clientGone():
            calls.append(1)
            return len(calls) > 2

        output = UnseekableOutput()
        with self.assertRaises(ArchiveCancelledError):
            self.streamer.streamZip(output, self.fileSystem.root, CancelToken(disconnectCheck=clientGone))

        # Two entries made it, and the archive is left without a central directory.
        self.assertEqual(len(calls), 3)
        self.assertNotIn(b'PK\x05\x06', bytes(output.buffer))
        with self.assertRaises(zipfile.BadZipFile):
            zipfile.ZipFile(io.BytesIO(bytes(output.buffer)))

    def testWriteErrorIsRaised(self):
        for archiveFormat in ArchiveFormat:
            with self.subTest(archiveFormat=archiveFormat):
                with self.assertRaises(BrokenPipeError):
                    self.streamer.stream(archiveFormat, FailingOutput(20), self.fileSystem.root)

    def testReadErrorWinsOverWriteError(self):
        def openUnlessDenied(path):
            if os.path.basename(path) == 'b.txt':
                raise PermissionError(f'Permission denied: {path}')
            return open(path, 'rb')

        # Leaves room for the gzip header, anything after it fails.
        outputs = {ArchiveFormat.TAR: FailingOutput(0), ArchiveFormat.TAR_GZ: FailingOutput(10)}

        for archiveFormat, output in outputs.items():
            with self.subTest(archiveFormat=archiveFormat):
                with patch.object(self.fileSystem, 'open', side_effect=openUnlessDenied), \
                     self.assertLogs('bases.Archive', level='DEBUG') as logs:
                    with self.assertRaises(PermissionError):
                        self.streamer.stream(archiveFormat, output, self.fileSystem.root)

                self.assertTrue(any('Ignoring' in line and 'client went away' in line for line in logs.output))

    def testMissingDirectoryIsRaised(self):
        with self.assertRaises(FileNotFoundError):
            self.stream(ArchiveFormat.TAR, os.path.join(self.root, 'missing'))


if __name__ == '__main__':
    unittest.main()
