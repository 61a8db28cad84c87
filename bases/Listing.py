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

import html

from dataclasses import dataclass
from typing import Tuple
from urllib.parse import quote

from bases.Kernel import getLogger
from bases.FileSystems import DirEntry, LocalFileSystem, sortKey
from bases.Utils import formatSize

logger = getLogger(__name__)

INDEX_FILE_NAME = 'index.html'

# Minimal page, but it works in every browser.
LISTING_TEMPLATE = """<!DOCTYPE html>
<meta http-equiv="Content-Type" content="text/html; charset=utf-8" />
<title>Index of {name}</title>
<style>
html, body {{
    background-color: #1a1a1a;
    color: #ccc;
}}
body {{
    margin: 0 auto;
    text-align: center;
    font-size: 1.25em;
}}
a {{
    padding: 12px;
    color: #2c2;
}}
a:hover {{
    color: #2f2;
}}
.dl, .size {{
    font-size: 0.75em;
}}
.dl > a {{
    padding: 0;
}}
</style>

<h2>Listing {name}</h2>
{parentLink}<h3>Directories</h3>
<p class="dl">You can download this directory as <a href="?format=zip">zip</a>, \
<a href="?format=tar">tar</a> or <a href="?format=tar.gz">tar.gz</a> file.</p>
{dirs}
{files}"""


@dataclass(frozen=True)
class Listing:
    name: str
    showParentLink: bool
    dirs: Tuple[DirEntry, ...]
    files: Tuple[DirEntry, ...]


class DirectoryLister:
    """Enumerates one directory level into a sorted Listing."""

    def __init__(self, fileSystem: LocalFileSystem):
        self.fileSystem = fileSystem

    def list(self, resolvedDir: str) -> Listing:
        """
        Args:
            resolvedDir: Directory path already resolved against the server root

        Returns:
            Listing with directories and files each sorted byte-wise by name

        Raises:
            OSError: If the directory cannot be read; nothing partial is returned
        """
        entries = self.fileSystem.scanDir(resolvedDir)

        dirs = sorted((e for e in entries if e.isDir), key=lambda e: sortKey(e.name))
        files = sorted((e for e in entries if not e.isDir), key=lambda e: sortKey(e.name))

        return Listing(
            name=self.fileSystem.displayName(resolvedDir),
            showParentLink=not self.fileSystem.isRoot(resolvedDir),
            dirs=tuple(dirs),
            files=tuple(files),
        )


def renderListing(listing: Listing) -> bytes:
    """Render a Listing as a UTF-8 HTML page."""
    escape = lambda s: html.escape(s, quote=True)
    href = lambda s: escape(quote(s, errors='surrogateescape'))

    parentLink = '<p><a href="../">Go back</a></p>\n' if listing.showParentLink else ''

    dirs = ''.join(f'<p><a href="{href(d.name)}/">{escape(d.name)}/</a></p>\n' for d in listing.dirs)

    files = ''
    if listing.files:
        files = '<h3>Files</h3>\n' + ''.join(
            f'<p><a href="{href(f.name)}">{escape(f.name)}</a> <span class="size">{formatSize(f.size)}</span></p>\n'
            for f in listing.files
        )

    page = LISTING_TEMPLATE.format(name=escape(listing.name), parentLink=parentLink, dirs=dirs, files=files)
    return page.encode('utf-8', errors='surrogateescape')
