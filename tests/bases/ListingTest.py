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
import unittest

from bases.FileSystems import DirEntry, LocalFileSystem
from bases.Listing import DirectoryLister, Listing, renderListing


class DirectoryListerTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempDir, True)

        self.root = os.path.join(self.tempDir, 'public')
        for dirName in ('zeta', 'Alpha', 'beta'):
            os.makedirs(os.path.join(self.root, dirName))
        for fileName, content in (('b.txt', b'12'), ('a.txt', b'1234'), ('C.txt', b'')):
            with open(os.path.join(self.root, fileName), 'wb') as f:
                f.write(content)
        with open(os.path.join(self.root, 'beta', 'inner.txt'), 'wb') as f:
            f.write(b'inner')

        self.fileSystem = LocalFileSystem(self.root)
        self.lister = DirectoryLister(self.fileSystem)

    def testListRoot(self):
        listing = self.lister.list(self.fileSystem.root)

        self.assertEqual(listing.name, 'public')
        self.assertFalse(listing.showParentLink)
        self.assertEqual([d.name for d in listing.dirs], ['Alpha', 'beta', 'zeta'])
        self.assertEqual([f.name for f in listing.files], ['C.txt', 'a.txt', 'b.txt'])
        self.assertEqual([f.size for f in listing.files], [0, 4, 2])

    def testListIsNotRecursive(self):
        listing = self.lister.list(self.fileSystem.root)

        self.assertNotIn('inner.txt', [f.name for f in listing.files])

    def testListSubdirectory(self):
        listing = self.lister.list(self.fileSystem.resolve('/beta/'))

        self.assertEqual(listing.name, 'beta')
        self.assertTrue(listing.showParentLink)
        self.assertEqual(listing.dirs, ())
        self.assertEqual([f.name for f in listing.files], ['inner.txt'])

    def testRootWithTrailingSeparatorHasNoParentLink(self):
        self.assertFalse(self.lister.list(self.fileSystem.root + os.sep).showParentLink)

    def testListReflectsDiskChanges(self):
        before = self.lister.list(self.fileSystem.root)
        with open(os.path.join(self.root, 'new.txt'), 'wb') as f:
            f.write(b'new')
        after = self.lister.list(self.fileSystem.root)

        self.assertNotIn('new.txt', [f.name for f in before.files])
        self.assertIn('new.txt', [f.name for f in after.files])

    def testListIsDeterministic(self):
        first = renderListing(self.lister.list(self.fileSystem.root))
        second = renderListing(self.lister.list(self.fileSystem.root))

        self.assertEqual(first, second)

    def testListMissingDirectory(self):
        with self.assertRaises(FileNotFoundError):
            self.lister.list(os.path.join(self.root, 'missing'))


class RenderListingTest(unittest.TestCase):

    def makeListing(self, showParentLink=True, dirs=(), files=()):
        return Listing(name='docs', showParentLink=showParentLink, dirs=tuple(dirs), files=tuple(files))

    def testStructure(self):
        page = renderListing(
            self.makeListing(
                dirs=[DirEntry('img', True, 0, 0)],
                files=[DirEntry('readme.md', False, 1500, 0)],
            )
        ).decode('utf-8')

        self.assertIn('<title>Index of docs</title>', page)
        self.assertIn('<h2>Listing docs</h2>', page)
        self.assertIn('<a href="../">Go back</a>', page)
        self.assertIn('<a href="img/">img/</a>', page)
        self.assertIn('<a href="readme.md">readme.md</a>', page)
        self.assertIn('<a href="?format=zip">zip</a>', page)
        self.assertIn('<a href="?format=tar">tar</a>', page)
        self.assertIn('<a href="?format=tar.gz">tar.gz</a>', page)

        # Parent link, then directories, then files
        self.assertLess(page.index('Go back'), page.index('Directories'))
        self.assertLess(page.index('href="img/"'), page.index('<h3>Files</h3>'))
        self.assertLess(page.index('<h3>Files</h3>'), page.index('href="readme.md"'))

    def testNoParentLinkAtRoot(self):
        page = renderListing(self.makeListing(showParentLink=False)).decode('utf-8')

        self.assertNotIn('Go back', page)

    def testNoFilesSection(self):
        page = renderListing(self.makeListing(dirs=[DirEntry('img', True, 0, 0)])).decode('utf-8')

        self.assertNotIn('<h3>Files</h3>', page)

    def testNamesAreEscaped(self):
        page = renderListing(
            self.makeListing(files=[DirEntry('<script>&"x".txt', False, 1, 0), DirEntry('a b#c?.txt', False, 1, 0)])
        ).decode('utf-8')

        self.assertNotIn('<script>', page)
        self.assertIn('&lt;script&gt;&amp;&quot;x&quot;.txt', page)
        self.assertIn('href="a%20b%23c%3F.txt"', page)

    def testUnicodeNames(self):
        page = renderListing(self.makeListing(files=[DirEntry('日本.txt', False, 1, 0)]))

        self.assertIsInstance(page, bytes)
        self.assertIn('>日本.txt</a>'.encode('utf-8'), page)
        self.assertIn(b'href="%E6%97%A5%E6%9C%AC.txt"', page)


if __name__ == '__main__':
    unittest.main()
