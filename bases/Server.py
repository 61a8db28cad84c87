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
import datetime
import email.utils
import os
import select
import socket
import ssl
import sys
import threading
import time

from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, quote, unquote, urlsplit

from bases.Kernel import getLogger, PUBLIC_VERSION
from bases.Archive import ArchiveFormat, ArchiveStreamer, CancelToken
from bases.FileSystems import LocalFileSystem
from bases.Listing import INDEX_FILE_NAME, DirectoryLister, renderListing
from bases.Settings import (
    AUTH_REALM, TRANSFER_CHUNK_SIZE, ArchiveCancelledError, PathEscapeError, ServerConfig
)
from bases.Users import CredentialStore

HANDSHAKE_TIMEOUT = 10 # Seconds

logger = getLogger(__name__)


class AuthMixin:
    """
    A mixin to handle Basic Authentication for BaseHTTPRequestHandler, backed by the
    server's CredentialStore. Authentication is only required once the store holds a
    credential. Failed attempts are answered with a challenge and never logged.
    """
    REALM = AUTH_REALM

    authUser = None

    def _parseBasicCredentials(self):
        """
        Returns:
            tuple: (username, password), or None when the header is missing or malformed.
        """
        scheme, _, encoded = self.headers.get('Authorization', '').partition(' ')
        if scheme.lower() != 'basic' or not encoded.strip():
            return None

        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError):
            return None

        username, separator, password = decoded.partition(':')
        if not separator:
            return None

        return username, password

    def handleAuthentication(self):
        """
        Checks the 'Authorization' header against the credential store.

        Returns:
            bool: True if the request may proceed, False if a challenge was sent.
        """
        userStore = self.server.userStore
        if not userStore.needAuth():
            return True

        credentials = self._parseBasicCredentials()
        if credentials and userStore.validate(*credentials):
            self.authUser = credentials[0]
            return True

        self.sendAuthChallenge()
        return False

    def sendAuthChallenge(self):
        """
        Sends a 401 Unauthorized response to the client, prompting for credentials.
        """
        html = b'<h1>401 Unauthorized</h1><p>Authentication required to access this resource.</p>'

        self.send_response(HTTPStatus.UNAUTHORIZED)
        self.send_header('WWW-Authenticate', f'Basic realm="{self.REALM}"')
        self.send_header('Content-Type', 'text/html; charset=utf-8')
        self.send_header('Content-Length', str(len(html)))
        if 'Content-Length' in self.headers or 'Transfer-Encoding' in self.headers:
            # The body is left unread, it must not be parsed as the next request.
            self.send_header('Connection', 'close')
            self.close_connection = True
        self.end_headers()

        if self.command != 'HEAD':
            self.wfile.write(html)


def copyExactly(src, dst, size, chunkSize=TRANSFER_CHUNK_SIZE):
    """
    Copies at most size bytes, bytes appended to src meanwhile are not sent.

    Returns:
        int: The number of bytes copied, less than size if src ended early.
    """
    remaining = size
    while remaining > 0:
        chunk = src.read(min(chunkSize, remaining))
        if not chunk:
            break
        dst.write(chunk)
        remaining -= len(chunk)
    return size - remaining


def contentDisposition(fileName):
    asciiName = fileName.encode('ascii', 'replace').decode('ascii').replace('"', '_').replace('\\', '_')
    value = f'attachment; filename="{asciiName}"'
    if asciiName != fileName:
        value += f"; filename*=UTF-8''{quote(fileName, safe='', errors='surrogateescape')}"
    return value


class FileServerHandler(AuthMixin, SimpleHTTPRequestHandler):
    """
    Serves files, directory listings and directory archives below the server root.

    Every request passes the authentication gate before the filesystem is touched.
    All failures are translated into a status and a log line here, in handleRequest().
    """

    protocol_version = 'HTTP/1.1'
    server_version = f'Upduck/{PUBLIC_VERSION}'

    def setup(self):
        if isinstance(self.request, ssl.SSLSocket):
            self.request.settimeout(HANDSHAKE_TIMEOUT)
            self.request.do_handshake()
            self.request.settimeout(None)

        super().setup()

    def log_request(self, code='-', size='-'):
        # Failed logins stay out of the log.
        if code == HTTPStatus.UNAUTHORIZED:
            return
        super().log_request(code, size)

    def log_message(self, format, *args):
        logger.debug(f"HTTP: {format % args}")

    @property
    def remoteAddress(self):
        host, port = self.client_address[:2]
        return f'{host}:{port}'

    def handleRequest(self):
        if not self.handleAuthentication():
            return

        if self.authUser is not None:
            logger.info(f'{self.authUser}: {self.command} {self.path} from {self.remoteAddress}')
        else:
            logger.info(f'{self.command} {self.path} from {self.remoteAddress}')

        self._headersSent = False

        try:
            if self.command != 'GET':
                # The request body is never read, so the connection cannot be reused.
                self.close_connection = True
                self._sendText(HTTPStatus.METHOD_NOT_ALLOWED, extraHeaders={'Allow': 'GET', 'Connection': 'close'})
                return

            self._serve()

        except ArchiveCancelledError as e:
            logger.debug(f'{self.command} {self.path} from {self.remoteAddress} stopped: {e}')
            self.close_connection = True
        except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as e:
            logger.debug(f'Client {self.remoteAddress} disconnected during {self.command} {self.path}: {e}')
            self.close_connection = True
        except (PathEscapeError, OSError) as e:
            logger.error(f'Error handling {self.command} {self.path} from {self.remoteAddress}: {e}')
            self._failRequest()
        except Exception as e:
            logger.exception(f'Error handling {self.command} {self.path} from {self.remoteAddress}: {e}')
            self._failRequest()

    # Methods other than GET pass the auth gate too, then get 405 from handleRequest().
    do_GET = do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_TRACE = handleRequest
    do_PROPFIND = do_PROPPATCH = do_MKCOL = do_COPY = do_MOVE = do_LOCK = do_UNLOCK = handleRequest

    def _failRequest(self):
        # Once the body has started the status cannot change, the client gets a truncated response.
        if self._headersSent:
            self.close_connection = True
        else:
            self._sendText(HTTPStatus.INTERNAL_SERVER_ERROR)

    def _serve(self):
        parsed = urlsplit(self.path)
        requestPath = unquote(parsed.path, errors='surrogateescape')
        query = parse_qs(parsed.query)

        fileSystem = self.server.fileSystem
        resolved = fileSystem.resolve(requestPath)

        try:
            st = fileSystem.stat(resolved)
        except (FileNotFoundError, NotADirectoryError):
            self._sendText(HTTPStatus.NOT_FOUND)
            return

        if st.isDir:
            self._serveDirectory(resolved, parsed, query)
        elif st.isFile:
            self._serveFile(resolved, st)
        else:
            # FIFOs, sockets and devices are not served.
            self._sendText(HTTPStatus.NOT_FOUND)

    def _serveDirectory(self, resolved, parsed, query):
        fileSystem = self.server.fileSystem

        indexPath = os.path.join(resolved, INDEX_FILE_NAME)
        if os.path.isfile(indexPath):
            self._serveFile(indexPath, fileSystem.stat(indexPath))
            return

        if self.server.config.disallowListings:
            self._sendText(HTTPStatus.FORBIDDEN)
            return

        archiveFormat = ArchiveFormat.fromName(query.get('format', [''])[0])
        if archiveFormat:
            self._serveArchive(resolved, archiveFormat)
            return

        if not parsed.path.endswith('/'):
            # Relative links in the listing need the trailing slash.
            location = '/' + parsed.path.lstrip('/') + '/'
            if parsed.query:
                location += '?' + parsed.query
            self._sendText(HTTPStatus.MOVED_PERMANENTLY, extraHeaders={'Location': location})
            return

        body = renderListing(self.server.lister.list(resolved))
        self._sendBytes(HTTPStatus.OK, body, 'text/html; charset=utf-8')

    def _isNotModified(self, mtime):
        ims = self.headers.get('If-Modified-Since')
        if not ims or 'If-None-Match' in self.headers:
            return False

        try:
            imsDate = email.utils.parsedate_to_datetime(ims)
        except (TypeError, IndexError, OverflowError, ValueError):
            return False

        if imsDate.tzinfo is None:
            imsDate = imsDate.replace(tzinfo=datetime.timezone.utc)

        lastModified = datetime.datetime.fromtimestamp(mtime, datetime.timezone.utc).replace(microsecond=0)
        return lastModified <= imsDate

    def _serveFile(self, path, st):
        if self._isNotModified(st.mtime):
            self.send_response(HTTPStatus.NOT_MODIFIED)
            self.send_header('Last-Modified', self.date_time_string(st.mtime))
            self.end_headers()
            return

        with self.server.fileSystem.open(path) as f:
            size = os.fstat(f.fileno()).st_size

            self.send_response(HTTPStatus.OK)
            self.send_header('Content-Type', self.guess_type(path))
            self.send_header('Content-Length', str(size))
            self.send_header('Last-Modified', self.date_time_string(st.mtime))
            self.end_headers()
            self._headersSent = True

            if copyExactly(f, self.wfile, size) < size:
                # The file shrank, the client got less than Content-Length promised.
                logger.warning(f'{path} changed while being sent to {self.remoteAddress}')
                self.close_connection = True

    def _serveArchive(self, resolved, archiveFormat):
        server = self.server
        fileName = f'{server.fileSystem.displayName(resolved)}.{archiveFormat.extension}'

        cancelToken = server.openCancelToken(disconnectCheck=self._clientDisconnected)
        try:
            self.send_response(HTTPStatus.OK)
            self.send_header('Content-Type', archiveFormat.contentType)
            self.send_header('Content-Disposition', contentDisposition(fileName))
            self.send_header('Cache-Control', 'no-cache, no-store, must-revalidate')
            self.send_header('Pragma', 'no-cache')
            self.send_header('Expires', '0')
            self.send_header('Connection', 'close')
            self.end_headers()
            self._headersSent = True
            self.close_connection = True

            startTime = time.monotonic()
            server.archiveStreamer.stream(archiveFormat, self.wfile, resolved, cancelToken)
            logger.debug(f'Sent {fileName} to {self.remoteAddress} in {time.monotonic() - startTime:.2f}s')
        finally:
            server.releaseCancelToken(cancelToken)

    def _clientDisconnected(self):
        """Peek at the socket: readable with no data means the client went away."""
        connection = self.connection
        if isinstance(connection, ssl.SSLSocket):
            return False # MSG_PEEK is not available on TLS sockets

        try:
            readable, _, _ = select.select([connection], [], [], 0)
            if not readable:
                return False
            return connection.recv(1, socket.MSG_PEEK) == b''
        except (OSError, ValueError):
            return True

    def _sendBytes(self, status, payload: bytes, ctype: str, extraHeaders=None):
        self.send_response(status)
        self.send_header('Content-Type', ctype)
        self.send_header('Content-Length', str(len(payload)))
        for key, value in (extraHeaders or {}).items():
            self.send_header(key, value)
        self.end_headers()

        if self.command != 'HEAD':
            self.wfile.write(payload)

    def _sendText(self, status, text=None, extraHeaders=None):
        status = HTTPStatus(status)
        payload = f'{text or status.phrase}\n'.encode('utf-8')
        self._sendBytes(status, payload, 'text/plain; charset=utf-8', extraHeaders)


class Server(ThreadingHTTPServer):
    """
    Threaded HTTP(S) server, one thread per connection.

    Holds everything the handler needs: the immutable config, the filesystem view,
    the lister, the archive streamer and the credential store. In-flight archive
    jobs are tracked so shutdown() can cancel them.
    """

    allow_reuse_address = True
    daemon_threads = True
    request_queue_size = 16

    def __init__(
        self,
        serverAddress,
        config: ServerConfig,
        userStore: CredentialStore,
        requestHandlerClass=None,
        sslContext: ssl.SSLContext = None,
    ):
        self.config = config
        self.userStore = userStore
        self.sslContext = sslContext

        self.fileSystem = LocalFileSystem(config.baseDir)
        self.lister = DirectoryLister(self.fileSystem)
        self.archiveStreamer = ArchiveStreamer(self.fileSystem)

        self._cancelTokens = set()
        self._tokensLock = threading.Lock()
        self._thread = None
        self._running = False

        super().__init__(serverAddress, requestHandlerClass or FileServerHandler)

    @property
    def scheme(self):
        return 'https' if self.sslContext else 'http'

    @property
    def url(self):
        host, port = self.server_address[:2]
        if host in ('', '0.0.0.0', '::'):
            host = '127.0.0.1'
        return f'{self.scheme}://{host}:{port}'

    def get_request(self):
        sock, clientAddress = super().get_request()
        if self.sslContext:
            # Handshake happens in the handler thread, see FileServerHandler.setup().
            sock = self.sslContext.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
        return sock, clientAddress

    def openCancelToken(self, disconnectCheck=None) -> CancelToken:
        cancelToken = CancelToken.withTimeout(self.config.archiveTimeout, disconnectCheck=disconnectCheck)
        with self._tokensLock:
            self._cancelTokens.add(cancelToken)
        return cancelToken

    def releaseCancelToken(self, cancelToken):
        with self._tokensLock:
            self._cancelTokens.discard(cancelToken)

    def cancelAll(self, reason='server shutdown'):
        with self._tokensLock:
            cancelTokens = list(self._cancelTokens)

        for cancelToken in cancelTokens:
            cancelToken.cancel(reason)

    def handle_error(self, request, clientAddress):
        error = sys.exc_info()[1]
        if isinstance(error, (ssl.SSLError, ConnectionError, socket.timeout)):
            logger.debug(f'Connection from {clientAddress} failed: {error}')
        else:
            logger.exception(f'Unhandled error while serving {clientAddress}')

    def start(self, blocking: bool = False) -> None:
        """
        Args:
            blocking: If True, serve in the calling thread until interrupted

        Raises:
            RuntimeError: If server already started
        """
        if self._running:
            raise RuntimeError("Server already started")

        self._running = True
        logger.debug(f"Server listening on {self.url}")

        if blocking:
            try:
                self.serve_forever()
            finally:
                self._running = False
                self.cancelAll()
        else:
            self._thread = threading.Thread(target=self.serve_forever, name=f'Server-{self.url}', daemon=True)
            self._thread.start()
            # Give server time to start
            time.sleep(0.1)

    def shutdown(self):
        self.cancelAll()
        super().shutdown()

    def stop(self) -> None:
        if self._running and self._thread:
            self.shutdown()
            self._thread.join(timeout=5.0)
            self._thread = None

        self._running = False
        self.cancelAll()
        self.server_close()

        logger.debug(f"Server {self.url} stopped")


def createServer(config: ServerConfig, userStore: CredentialStore, port=None, host='', sslContext=None, handlerClass=None):
    # Factory shared by the HTTP server and the HTTPS collaborator, so both use the same router.
    serverAddress = (host, config.serverPort if port is None else port)
    return Server(serverAddress, config, userStore, handlerClass, sslContext)
