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
Streaming zip / tar / tar.gz generation for a directory subtree.

Archives are written straight into the response stream, one file at a time, so
memory use does not depend on the archive size. The output may be unseekable.

Cancellation is checked before every file. A file that has started is always
copied to the end (or fails).
"""

import gzip
import shutil
import tarfile
import threading
import time
import zipfile

from enum import Enum
from typing import BinaryIO, Callable, Optional

from bases.Kernel import getLogger
from bases.FileSystems import LocalFileSystem, Stat
from bases.Settings import ArchiveCancelledError, TRANSFER_CHUNK_SIZE

logger = getLogger(__name__)

GZIP_COMPRESS_LEVEL = 9

# Zip timestamps cannot represent anything outside 1980-2107.
ZIP_MIN_DATE_TIME = (1980, 1, 1, 0, 0, 0)
ZIP_MAX_DATE_TIME = (2107, 12, 31, 23, 59, 58)


class ArchiveFormat(Enum):
    ZIP = ('zip', 'application/zip')
    TAR = ('tar', 'application/x-tar')
    TAR_GZ = ('tar.gz', 'application/gzip')

    def __init__(self, extension, contentType):
        self.extension = extension
        self.contentType = contentType

    @classmethod
    def fromName(cls, name) -> Optional['ArchiveFormat']:
        """Case-insensitive lookup by extension ('zip', 'TAR', 'tar.gz'...), None if unknown."""
        if not name:
            return None

        name = name.lower()
        for archiveFormat in cls:
            if archiveFormat.extension == name:
                return archiveFormat
        return None


class CancelToken:
    """
    Cooperative cancellation signal for one archive job.

    The token counts as cancelled once cancel() is called, the optional deadline
    (time.monotonic() based) has passed, or the optional disconnect check returns True.
    """

    def __init__(self, deadline: Optional[float] = None, disconnectCheck: Optional[Callable[[], bool]] = None):
        self._event = threading.Event()
        self.deadline = deadline
        self.disconnectCheck = disconnectCheck
        self.reason = None

    @classmethod
    def withTimeout(cls, timeout, disconnectCheck=None):
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
        return cls(deadline=deadline, disconnectCheck=disconnectCheck)

    def cancel(self, reason='cancelled'):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def isCancelled(self) -> bool:
        if self._event.is_set():
            return True

        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel('timeout')
            return True

        if self.disconnectCheck is not None and self.disconnectCheck():
            self.cancel('client disconnected')
            return True

        return False

    def raiseIfCancelled(self):
        if self.isCancelled:
            raise ArchiveCancelledError(f'Archive generation stopped: {self.reason}')


def _zipDateTime(mtime):
    dateTime = time.localtime(mtime)[:6]
    return min(max(dateTime, ZIP_MIN_DATE_TIME), ZIP_MAX_DATE_TIME)


class ArchiveStreamer:
    """
    Writes every regular file below a directory into a zip, tar or tar.gz stream.

    Directories are not emitted as entries, they are implied by the file names.
    Any error aborts the whole archive and is raised; the container is then left
    unfinished so the client cannot mistake it for a complete one.
    """

    def __init__(self, fileSystem: LocalFileSystem, chunkSize: int = TRANSFER_CHUNK_SIZE):
        self.fileSystem = fileSystem
        self.chunkSize = chunkSize

    def stream(self, archiveFormat: ArchiveFormat, output: BinaryIO, resolvedDir: str, cancelToken=None):
        streamers = {
            ArchiveFormat.ZIP: self.streamZip,
            ArchiveFormat.TAR: self.streamTar,
            ArchiveFormat.TAR_GZ: self.streamTarGz,
        }
        return streamers[archiveFormat](output, resolvedDir, cancelToken)

    def _iterFiles(self, resolvedDir, cancelToken):
        for filePath, relName, st in self.fileSystem.walkFiles(resolvedDir):
            if cancelToken is not None:
                cancelToken.raiseIfCancelled()
            yield filePath, relName, st

    def streamZip(self, output: BinaryIO, resolvedDir: str, cancelToken: Optional[CancelToken] = None):
        """
        Entries are stored uncompressed, each followed by a data descriptor when the
        output cannot seek.
        """
        zipWriter = zipfile.ZipFile(output, mode='w', compression=zipfile.ZIP_STORED)

        count = 0
        try:
            for filePath, relName, st in self._iterFiles(resolvedDir, cancelToken):
                zipInfo = zipfile.ZipInfo(relName, date_time=_zipDateTime(st.mtime))
                zipInfo.compress_type = zipfile.ZIP_STORED
                zipInfo.external_attr = (st.mode & 0xFFFF) << 16
                zipInfo.file_size = st.size

                with self.fileSystem.open(filePath) as src, zipWriter.open(zipInfo, mode='w') as dst:
                    shutil.copyfileobj(src, dst, self.chunkSize)
                count += 1
        except BaseException:
            # Detach the output, otherwise ZipFile.__del__ appends a central directory.
            zipWriter.fp = None
            raise

        # Only reached without error: writes the central directory.
        zipWriter.close()
        logger.debug(f'Streamed {count} files from {resolvedDir} as zip')

    def streamTar(self, output: BinaryIO, resolvedDir: str, cancelToken: Optional[CancelToken] = None):
        tarWriter = tarfile.open(fileobj=output, mode='w|', format=tarfile.PAX_FORMAT)

        count = 0
        try:
            for filePath, relName, st in self._iterFiles(resolvedDir, cancelToken):
                with self.fileSystem.open(filePath) as src:
                    tarWriter.addfile(self._tarInfo(relName, st), fileobj=src)
                count += 1
        except BaseException:
            # Flush the buffered blocks but leave out the end-of-archive blocks.
            try:
                tarWriter.fileobj.close()
            except OSError as closeError:
                # The first error is the one the caller must see.
                logger.debug(f'Ignoring tar stream close error after failed tar stream: {closeError}')
            tarWriter.closed = True
            raise

        tarWriter.close()
        logger.debug(f'Streamed {count} files from {resolvedDir} as tar')

    def streamTarGz(self, output: BinaryIO, resolvedDir: str, cancelToken: Optional[CancelToken] = None):
        gzipWriter = gzip.GzipFile(fileobj=output, mode='wb', compresslevel=GZIP_COMPRESS_LEVEL)

        try:
            self.streamTar(gzipWriter, resolvedDir, cancelToken)
        except BaseException:
            try:
                gzipWriter.close()
            except OSError as closeError:
                # The tar error is the one the caller must see.
                logger.debug(f'Ignoring gzip close error after failed tar stream: {closeError}')
            raise

        gzipWriter.close()

    @staticmethod
    def _tarInfo(relName: str, st: Stat) -> tarfile.TarInfo:
        tarInfo = tarfile.TarInfo(relName)
        tarInfo.type = tarfile.REGTYPE
        tarInfo.size = st.size
        tarInfo.mtime = int(st.mtime)
        tarInfo.mode = st.mode & 0o7777
        return tarInfo
