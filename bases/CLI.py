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
import getpass
import json
import os
import logging
import logging.config
import platform

from bases.Kernel import PUBLIC_VERSION, getLogger, UpduckEvent, configureGlobalLogLevel, AddonsManager, StorageLocator
from bases.Settings import (
    DEFAULT_BASE_DIR, DEFAULT_SECURE_PORT, DEFAULT_SERVER_PORT, ConfigError, ServerConfig, loadConfigFile,
    saveConfigFile
)
from bases.Utils import flushPrint, getEnv

logger = getLogger(__name__)

SERVE_COMMAND = 'serve'
USER_COMMANDS = ('adduser', 'deluser', 'resetusers', 'listusers')

EXAMPLES = """
Examples:
  Start a simple HTTP server on the default port:

    upduck

  Start a simple HTTP server on port 2020 that doesn't show directory listings:

    upduck -p 2020 --disallow-listings

  Serve files from a specific directory (default is working directory):

    upduck --dir path/to/dir

  Start a HTTP server and a HTTPS server for mysite.duckdns.org:

    upduck --email your@email.com --token DuckDNSToken --site mysite --cert cert.pem --key key.pem

    Your router must forward the external port of your choosing to the secure port (443 by default).

  Save your configuration, the next start without arguments uses it:

    upduck --save -p 2020 --email your@email.com --token DuckDNSToken --site mysite

  Protect everything with a password:

    upduck adduser alice
"""


def loadEnvFile():
    """
    Load environment variables from the .env file of the configuration directory.
    Only sets variables that are not already defined in os.environ.
    """
    envFilePath = StorageLocator.getInstance().getConfigPath('.env')

    if not os.path.exists(envFilePath):
        return

    try:
        loadedCount = 0

        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')

    except (OSError, UnicodeDecodeError) as e:
        flushPrint(f'Error: Cannot load .env file: {e}')
        logger.error(f'Cannot load .env file {envFilePath}: {e}')


def configureLogging(logLevel):
    """Configure logging from a level name or a logging configuration JSON file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. UPDUCK_LOGGING_LEVEL environment variable
    3. INFO, so request lines are shown like any file server does
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('UPDUCK_LOGGING_LEVEL', None)

    if logLevel is None:
        logLevel = 'INFO'

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, OSError, KeyError, ValueError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    levelMapping = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}

    if logLevel.upper() in levelMapping:
        configureGlobalLogLevel(levelMapping[logLevel.upper()])
        logger.debug(f"Logging level set to {logLevel}")
    else:
        configureGlobalLogLevel(logging.WARNING)
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")

    suppressNoisyLogger()

    return logLevel


def showVersion():
    """Display version information and enabled addons"""
    flushPrint(f"Upduck v{PUBLIC_VERSION}")
    flushPrint("")

    addonsManager = AddonsManager.getInstance()
    enabledAddons = addonsManager.getEnabledAddons()

    if enabledAddons:
        flushPrint("Enabled addons:")
        for addon in enabledAddons:
            status = "[OK] Loaded" if addonsManager.isAddonLoaded(addon) else "[FAIL] Failed to load"
            flushPrint(f"  {addon:<12} {status}")
    else:
        flushPrint("No addons available")

    flushPrint("")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Config directory: {StorageLocator.getInstance().getConfigDir()}")


# Argument validators.
def validatePort(portStr):
    """Validate port number for argparse"""
    try:
        port = int(portStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")

    if not (1 <= port <= 65535):
        raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (1-65535)")
    return port


def validateTimeout(timeoutStr):
    """Validate a non-negative number of seconds for argparse"""
    try:
        timeout = float(timeoutStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid timeout value: {timeoutStr}")

    if timeout < 0:
        raise argparse.ArgumentTypeError(f"Timeout {timeout} cannot be negative")
    return timeout


def validateLogLevel(logLevel):
    """Validate log level for argparse"""
    # File paths are validated by configureLogging()
    if os.path.exists(logLevel):
        return logLevel

    validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if logLevel.upper() not in validLevels:
        raise argparse.ArgumentTypeError(
            f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
        )
    return logLevel.upper()


def _configureServeParser(parser):
    """Configure parser for serving files (serve command)"""

    # Defaults are None so buildServerConfig() can tell which flags were given.
    parser.add_argument(
        "-p", "--port",
        type=validatePort,
        default=None,
        help=f"HTTP server port (default: {DEFAULT_SERVER_PORT})",
        metavar="PORT",
        dest="port"
    )
    parser.add_argument(
        "--dir",
        default=None,
        help="Directory that should be served (default: working directory)",
        metavar="DIR",
        dest="dir"
    )
    parser.add_argument(
        "--disallow-listings",
        action="store_true",
        default=None,
        help="Don't show directory listings",
        dest="disallowListings"
    )
    parser.add_argument(
        "--email",
        default='',
        help="Email sent to Let's Encrypt for certificate registration",
        metavar="EMAIL",
        dest="email"
    )
    parser.add_argument(
        "--token", default='', help="The token you get from duckdns.org", metavar="TOKEN", dest="token"
    )
    parser.add_argument(
        "--site",
        default='',
        help='Your duckdns.org subdomain name, e.g. "test" for test.duckdns.org',
        metavar="SITE",
        dest="site"
    )
    parser.add_argument(
        "--secure-port",
        type=validatePort,
        default=None,
        help=f"HTTPS server port (default: {DEFAULT_SECURE_PORT})",
        metavar="PORT",
        dest="securePort"
    )
    parser.add_argument(
        "--cert", default=None, help="TLS certificate (PEM) for the HTTPS server", metavar="FILE", dest="certFile"
    )
    parser.add_argument(
        "--key", default=None, help="TLS private key (PEM) for the HTTPS server", metavar="FILE", dest="keyFile"
    )
    parser.add_argument(
        "--archive-timeout",
        type=validateTimeout,
        default=None,
        help="Stop generating a directory archive after this many seconds. 0 means no timeout.",
        metavar="SECONDS",
        dest="archiveTimeout"
    )
    parser.add_argument(
        "--save",
        action="store_true",
        default=False,
        help="Save the given command line arguments to a config file located in your config directory"
    )


def configureCLIParser():
    """Configure the parser with the global parent approach

    Returns:
        tuple: (parser, globalsParent, commandNames)
    """
    # === 1) Global parameters in a parent parser ===
    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information and enabled addons")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: INFO)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    # Allow addons to register additional global options
    UpduckEvent.cliArgumentsGlobalOptionsRegister.trigger(parser=globalsParent)

    # === 2) Main parser + subparsers; all inherit from globalsParent ===
    parser = argparse.ArgumentParser(
        prog="upduck",
        description="upduck, a simple HTTP and HTTPS file server",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[globalsParent],
        exit_on_error=False,
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    serveSubparser = subparsers.add_parser(
        SERVE_COMMAND, help='Serve a directory (default command)', parents=[globalsParent], exit_on_error=False
    )
    _configureServeParser(serveSubparser)

    addUserSubparser = subparsers.add_parser(
        'adduser', help='Add a user or change its password', parents=[globalsParent], exit_on_error=False
    )
    addUserSubparser.add_argument("username", metavar="NAME", help="User name (must not contain ':')")
    addUserSubparser.add_argument(
        "--password", metavar="PASSWORD", help="Password for the user (prompted when omitted)", dest="password"
    )

    delUserSubparser = subparsers.add_parser(
        'deluser', help='Remove a user', parents=[globalsParent], exit_on_error=False
    )
    delUserSubparser.add_argument("username", metavar="NAME", help="User name")

    subparsers.add_parser(
        'resetusers', help='Remove all users, disabling authentication', parents=[globalsParent], exit_on_error=False
    )
    subparsers.add_parser('listusers', help='List all users', parents=[globalsParent], exit_on_error=False)

    commandNames = {SERVE_COMMAND, *USER_COMMANDS}
    return parser, globalsParent, commandNames


def preprocessArguments(argv, commandNames, globalsParent):
    """
    Auto-insert the 'serve' command after the global options when no command is given,
    so that `upduck -p 2020` means `upduck serve -p 2020`.

    Returns:
        list: Preprocessed argv ready for final parsing
    """
    argv = argv.copy()

    globalOptions = set()
    globalOptionsWithValues = set() # Options that take a value

    for action in globalsParent._actions:
        for opt in action.option_strings:
            globalOptions.add(opt)
            if action.nargs != 0:
                globalOptionsWithValues.add(opt)

    # Find where command arguments start (after global arguments)
    globalArgCount = 0
    i = 0
    while i < len(argv):
        arg = argv[i]

        # --option=value format
        if '=' in arg and arg.split('=', 1)[0] in globalOptions:
            globalArgCount = i + 1
            i += 1
            continue

        if arg in globalOptions:
            globalArgCount = i + 1
            if arg in globalOptionsWithValues and i + 1 < len(argv) and not argv[i + 1].startswith('-'):
                globalArgCount = i + 2
                i += 2
                continue
            i += 1
            continue

        # First non-global argument found
        break

    if globalArgCount < len(argv) and argv[globalArgCount] in ('-h', '--help'):
        return argv

    if globalArgCount == len(argv) or argv[globalArgCount] not in commandNames:
        argv.insert(globalArgCount, SERVE_COMMAND)
        logger.debug(f"Auto-inserted '{SERVE_COMMAND}' command")

    return argv


def processGlobalArguments(globalArgs):
    """
    Process global arguments (--log-level, --version, addon options) before command processing.

    Returns:
        int or None: Exit code if the process should exit now, None otherwise
    """
    configureLogging(globalArgs.logLevel)

    # Let addons handle their global options
    argPolicy = {'exitCode': None}
    UpduckEvent.cliArgumentsStore.trigger(args=globalArgs, argPolicy=argPolicy)

    if argPolicy['exitCode'] is not None:
        return argPolicy['exitCode']

    if globalArgs.version:
        showVersion()
        return 0

    return None


def validateBaseDir(path):
    """
    Returns:
        str: Absolute path of the directory to serve

    Raises:
        ConfigError: If path does not exist or is not a directory
    """
    absPath = os.path.abspath(path or DEFAULT_BASE_DIR)

    if not os.path.exists(absPath):
        raise ConfigError(f'Directory to serve does not exist: {absPath}')
    if not os.path.isdir(absPath):
        raise ConfigError(f'Not a directory: {absPath}')

    return absPath


def _configFromArguments(args, base=None):
    config = base or ServerConfig()
    changes = {}

    if args.port is not None:
        changes['serverPort'] = args.port
    if args.dir is not None:
        changes['baseDir'] = args.dir
    if args.disallowListings is not None:
        changes['disallowListings'] = args.disallowListings

    return config.replace(**changes)


def buildServerConfig(args, configPath):
    """
    Build the ServerConfig for the serve command.

    With --save the configuration given on the command line is written to configPath.
    Without any DuckDNS/Let's Encrypt flag the saved configuration is loaded, and
    explicitly given -p, --dir and --disallow-listings override it.

    Returns:
        tuple: (config, shouldExit)

    Raises:
        ConfigError: If the saved configuration cannot be read
        OSError: If the configuration cannot be saved
    """
    config = _configFromArguments(args).replace(
        duckDNSToken=args.token,
        duckDNSSite=args.site,
        letsEncryptEmail=args.email,
    )

    extra = {}
    if args.securePort is not None:
        extra['securePort'] = args.securePort
    if args.certFile is not None:
        extra['certFile'] = args.certFile
    if args.keyFile is not None:
        extra['keyFile'] = args.keyFile
    if args.archiveTimeout is not None:
        extra['archiveTimeout'] = args.archiveTimeout
    config = config.replace(**extra)

    if args.save:
        logger.info(f"Saving configuration to {configPath}")
        logger.info("Please note that from now any program might be able to get your Email and Token from that file.")
        saveConfigFile(config, configPath)
        logger.info("Successfully saved config file.")
        return config, True

    if not args.token and not args.site and not args.email:
        savedConfig = loadConfigFile(configPath)
        if savedConfig is not None:
            logger.info(f"Loaded config file from {configPath}")
            config = _configFromArguments(args, savedConfig).replace(**extra)

    if not config.duckDNSToken:
        if not config.duckDNSSite:
            logger.info("Not using secure DuckDNS server")
        else:
            logger.warning("Token missing for your DuckDNS site")
    elif not config.duckDNSSite:
        logger.warning("DuckDNS site missing, you only gave the token")

    return config, False


def processUserCommand(args, userStore):
    """
    Run one of the user management commands against the credential store.

    Returns:
        int: Exit code
    """
    command = args.command

    if command == 'adduser':
        password = args.password
        if password is None:
            password = getpass.getpass(f'Password for {args.username}: ')
            if password != getpass.getpass('Repeat password: '):
                flushPrint('Error: Passwords do not match')
                return 1

        if not password:
            flushPrint('Error: Password must not be empty')
            return 1

        userStore.addUser(args.username, password)
        flushPrint(f'User {args.username} saved to {userStore.path}')
        return 0

    if command == 'deluser':
        if not userStore.removeUser(args.username):
            flushPrint(f'Error: User {args.username} does not exist')
            return 1

        flushPrint(f'User {args.username} removed')
        return 0

    if command == 'resetusers':
        userStore.resetUsers()
        flushPrint('All users removed, authentication is disabled')
        return 0

    if command == 'listusers':
        usernames = userStore.usernames()
        if not usernames:
            flushPrint('No users, authentication is disabled')
        for username in usernames:
            flushPrint(username)
        return 0

    raise ValueError(f'Unknown user command: {command}')
