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

import argparse
import functools
import os
import platform
import signal
import sys

import certifi

from bases.Kernel import getLogger, AddonsManager, StorageLocator, UpduckEvent
from bases.Server import createServer
from bases.Settings import CONFIG_FILE_NAME, USERS_FILE_NAME, ConfigError, CredentialStoreError
from bases.CLI import (
    USER_COMMANDS, buildServerConfig, configureCLIParser, loadEnvFile, preprocessArguments, processGlobalArguments,
    processUserCommand, validateBaseDir
)
from bases.Users import CredentialStore
from bases.Utils import flushPrint, getExternalIP, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            # First Ctrl+C - set flag and raise KeyboardInterrupt normally
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    # Load .env file early (before any configuration or addon loading)
    loadEnvFile()

    if platform.system().lower() != 'windows':
        os.environ["SSL_CERT_FILE"] = certifi.where()


def serve(config, userStore):
    """
    Serve config.baseDir over HTTP until interrupted. Addons subscribed to
    UpduckEvent.serverStarted may start more servers from the same factory.

    Returns:
        int: Exit code
    """
    baseDir = validateBaseDir(config.baseDir)
    config = config.replace(baseDir=baseDir)

    logger.info(f"Serving files from {baseDir}")

    server = createServer(config, userStore)
    port = server.server_address[1]

    externalIP = getExternalIP()
    if externalIP:
        logger.info(f"Local HTTP server starting on http://{externalIP}:{port}")
    else:
        logger.info(f"Local HTTP server starting on port {port}")

    if userStore.needAuth():
        logger.info(f"Basic authentication enabled for {len(userStore)} users")

    serverFactory = functools.partial(createServer, config, userStore)

    try:
        UpduckEvent.serverStarted.trigger(config=config, userStore=userStore, serverFactory=serverFactory)
        server.start(blocking=True)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
    finally:
        UpduckEvent.serverStopping.trigger(config=config)
        server.stop()

    return 0


def runCLIMain(argv=None):
    """Run the program using two-phase parsing"""
    AddonsManager.getInstance().loadAllAddons()

    parser, globalsParent, commandNames = configureCLIParser()

    argv = sys.argv[1:] if argv is None else list(argv)

    # Phase 1: Use globalsParent to separate global args from the rest
    try:
        globalArgs, _ = globalsParent.parse_known_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    exitCode = processGlobalArguments(globalArgs)
    if exitCode is not None:
        return exitCode

    # Phase 2: Final parsing with the subcommand determined
    argv = preprocessArguments(argv, commandNames, globalsParent)
    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    storageLocator = StorageLocator.getInstance()
    userStore = CredentialStore.load(storageLocator.getConfigPath(USERS_FILE_NAME))

    if args.command in USER_COMMANDS:
        return processUserCommand(args, userStore)

    config, shouldExit = buildServerConfig(args, storageLocator.getConfigPath(CONFIG_FILE_NAME))
    if shouldExit:
        return 0

    return serve(config, userStore)


def main(argv=None):
    setupSettings()
    setupGracefulShutdown()

    try:
        return runCLIMain(argv) or 0
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0
    except ConfigError as e:
        sendException(logger, e, errorPrefix='Configuration error')
        return 1
    except CredentialStoreError as e:
        sendException(logger, e, errorPrefix='User database error')
        return 1
    except OSError as e:
        sendException(logger, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
