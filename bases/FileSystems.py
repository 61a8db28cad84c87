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
Local filesystem access for the request handler.

Request paths are untrusted: every one of them goes through resolvePath() before
the filesystem is touched, so the resulting path is always the server root or a
descendant of it.
"""

import os
import stat as _stat

from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Tuple

from bases.Kernel import getLogger
from bases.Settings import PathEscapeError

logger = getLogger(__name__)

_LEADING_SEPARATORS = '/' + os.sep + (os.altsep or '')


@dataclass(frozen=True)
class Stat:
    """File/directory metadata"""
    size: int
    mtime: float
    isDir: bool
    mode: int = 0

    @property
    def isFile(self) -> bool:
        return _stat.S_ISREG(self.mode)

    @classmethod
    def fromStatResult(cls, st):
        # Avoid os.path.isdir() here: it triggers an extra stat() call.
        return cls(size=int(st.st_size), mtime=float(st.st_mtime), isDir=_stat.S_ISDIR(st.st_mode), mode=st.st_mode)


@dataclass(frozen=True)
class DirEntry:
    """One directory entry, read fresh on every listing"""
    name: str
    isDir: bool
    size: int
    modTime: float


def sortKey(name: str) -> bytes:
    """Byte-wise, case-sensitive ordering key for a file name."""
    return os.fsencode(name)


def resolvePath(root: str, requestPath: str) -> str:
    """
    Map an untrusted request path onto a path inside root.

    Args:
        root: Absolute server root
        requestPath: URL path, already percent-decoded

    Returns:
        str: root joined with the sanitized relative path

    Raises:
        PathEscapeError: If the path resolves outside root or cannot be related to it
    """
    if '\0' in requestPath:
        raise PathEscapeError('Request path contains a NUL byte')

    joined = os.path.join(root, requestPath.lstrip(_LEADING_SEPARATORS))

    try:
        relPath = os.path.relpath(joined, root)
    except ValueError as e: # Different drives on Windows
        raise PathEscapeError(f'Cannot relate request path to root: {e}') from e

    if relPath == os.pardir or relPath.startswith(os.pardir + os.sep):
        raise PathEscapeError('Request path escapes the server root')

    if relPath == os.curdir:
        return root

    return os.path.join(root, relPath)


class LocalFileSystem:
    """
    Local filesystem backend rooted at a canonical directory.

    Wraps os.* calls so the handler, lister and archive streamer share one view of
    the server root.
    """

    def __init__(self, root: str):
        """
        Args:
            root: Absolute or relative path to root directory
        """
        self.root = os.path.realpath(root)

        logger.debug(f"LocalFileSystem initialized: {self.root}")

    @property
    def rootName(self) -> str:
        return os.path.basename(self.root.rstrip(os.sep)) or self.root

    def resolve(self, requestPath: str) -> str:
        return resolvePath(self.root, requestPath)

    def isRoot(self, path: str) -> bool:
        """Compare normalized absolute paths, so trailing separators do not matter."""
        normalize = lambda p: os.path.normcase(os.path.normpath(os.path.abspath(p)))
        return normalize(path) == normalize(self.root)

    def displayName(self, path: str) -> str:
        if self.isRoot(path):
            return self.rootName
        return os.path.basename(os.path.normpath(path))

    def stat(self, path: str) -> Stat:
        """
        Args:
            path: Absolute path to file or directory

        Returns:
            Stat object with size, mtime, isDir, mode

        Raises:
            FileNotFoundError, NotADirectoryError: If the path does not exist
        """
        return Stat.fromStatResult(os.stat(path))

    def open(self, path: str) -> BinaryIO:
        return open(path, 'rb')

    def scanDir(self, path: str) -> List[DirEntry]:
        """
        List exactly one level of path. Symlinks report the type of their target,
        dangling symlinks fall back to the link itself.
        """
        entries = []

        with os.scandir(path) as it:
            for entry in it:
                try:
                    st = entry.stat()
                except FileNotFoundError:
                    st = entry.stat(follow_symlinks=False)

                entries.append(
                    DirEntry(
                        name=entry.name,
                        isDir=_stat.S_ISDIR(st.st_mode),
                        size=int(st.st_size),
                        modTime=float(st.st_mtime),
                    )
                )

        return entries

    def walkFiles(self, top: str) -> Iterator[Tuple[str, str, Stat]]:
        """
        Recursively walk top in byte-wise name order.

        Symlinked directories are not descended. Non-regular files (FIFOs, sockets,
        devices) are skipped since reading them may block forever.

        Yields:
            (absolutePath, relativeName, stat) for every regular file; relativeName
            always uses '/' separators.

        Raises:
            OSError: Any error while listing a directory or stating a file.
        """

        def raiseError(e):
            raise e

        for dirPath, dirNames, fileNames in os.walk(top, onerror=raiseError):
            dirNames.sort(key=sortKey)

            for fileName in sorted(fileNames, key=sortKey):
                filePath = os.path.join(dirPath, fileName)
                st = self.stat(filePath)

                if not st.isFile:
                    logger.debug(f"Skipping non-regular file {filePath}")
                    continue

                relName = os.path.relpath(filePath, top).replace(os.sep, '/')
                yield filePath, relName, st
