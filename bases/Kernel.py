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
import importlib
import logging
import threading
import json

# Error reporting only happens when a SENTRY_DSN is configured, nothing is sent otherwise.
import sentry_sdk

from pathlib import Path
from enum import Enum

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

APP_NAME = 'upduck'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('UPDUCK_LOGGING_LEVEL', '').upper() in LOG_LEVEL_MAPPING:
    configureGlobalLogLevel(LOG_LEVEL_MAPPING[os.getenv('UPDUCK_LOGGING_LEVEL').upper()])


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is initialized once, and only when
    a SENTRY_DSN can be found through SecretGetter.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        if not sentry_sdk.get_client().is_active():
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." on exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    release=f'{APP_NAME}@{version}',
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            logger.addHandler(SentryHandler())

        return logging.LoggerAdapter(logger, {'version': version or 'unknown'})

    except Exception as e:
        fallbackLogger = logging.getLogger(name)
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")
        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() instead of __init__.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventTiming(Enum):
    """Constants for event timing phases"""
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class EventService(Singleton):
    """
    Dispatches named events to subscribed observers.
    Every event owns a (BEFORE, AFTER) pair of signalslot Signals.
    """

    def initialize(self):
        self.signals = {}

    def reset(self):
        """
        Clears all registered signals. Only test suites should need this; call
        registerEvents() afterwards to restore the application events.
        """
        self.signals.clear()

    def _normalizeTiming(self, timing):
        if timing is None:
            return None

        if isinstance(timing, EventTiming):
            return timing

        if isinstance(timing, str):
            try:
                return EventTiming(timing.upper())
            except ValueError:
                raise ValueError(f"Invalid timing value: '{timing}'. Must be 'BEFORE' or 'AFTER'.")

        raise ValueError(f"Timing must be EventTiming enum, string, or None. Got: {type(timing)}")

    def trigger(self, event, *args, **kwargs):
        """
        Trigger an event, calling all connected observers (slots).
        Unregistered events are ignored.
        """
        normalizedTiming = self._normalizeTiming(kwargs.pop('timing', None))

        signalObjects = self.signals.get(event)
        if not signalObjects:
            return

        beforeSignal, afterSignal = signalObjects

        if normalizedTiming in (EventTiming.BEFORE, None):
            beforeSignal.emit(*args, **kwargs)

        if normalizedTiming in (EventTiming.AFTER, None):
            afterSignal.emit(*args, **kwargs)

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        if self.isRegistered(event):
            return False
        self.signals[event] = (Signal(), Signal())
        return True

    def unregister(self, event):
        if not self.isRegistered(event):
            return False

        beforeSignal, afterSignal = self.signals[event]
        beforeSignal.disconnect_all()
        afterSignal.disconnect_all()
        del self.signals[event]
        return True

    def subscribe(self, event, observer, timing=EventTiming.AFTER, index=-1):
        """
        Subscribe an observer to an event. Observers are called with keyword arguments
        only, so they must accept **kwargs.
        """
        if not self.isRegistered(event):
            raise KeyError(f"You must register event '{event}' first.")

        normalizedTiming = self._normalizeTiming(timing)
        if normalizedTiming not in (EventTiming.BEFORE, EventTiming.AFTER):
            raise ValueError("Timing must be EventTiming.BEFORE or EventTiming.AFTER.")

        signalObject = self.signals[event][0 if normalizedTiming == EventTiming.BEFORE else 1]

        if observer in signalObject._slots:
            return

        if index == -1:
            signalObject.connect(observer)
        else:
            signalObject._slots.insert(index, observer)

    def unsubscribe(self, event, observer, timing=None):
        if not self.isRegistered(event):
            return

        timingsToCheck = [self._normalizeTiming(timing)] if timing else [EventTiming.BEFORE, EventTiming.AFTER]

        for t in timingsToCheck:
            signalObject = self.signals[event][0 if t == EventTiming.BEFORE else 1]
            if observer in signalObject._slots:
                signalObject.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

        self.eventService = EventService.getInstance()

    def subscribe(self, observer, timing=EventTiming.AFTER, index=-1):
        return self.eventService.subscribe(self.key, observer, timing=timing, index=index)

    def unsubscribe(self, observer, timing=None):
        return self.eventService.unsubscribe(self.key, observer, timing=timing)

    def trigger(self, *args, **kwargs):
        return self.eventService.trigger(self.key, *args, **kwargs)


class StorageLocator(Singleton):
    """
    Resolves the per-user configuration directory.

    Priority:
        1. UPDUCK_STORAGE_LOCATION, when it points to an existing directory
        2. $XDG_CONFIG_HOME
        3. ~/.config

    The lookup is done on every call, so environment changes are honored.
    """

    def initialize(self):
        self.logger = logging.getLogger(__name__)

    def _getEnvStorageLocation(self):
        envStorageLocation = os.getenv('UPDUCK_STORAGE_LOCATION')
        if envStorageLocation and os.path.isdir(envStorageLocation):
            return envStorageLocation
        return None

    def getConfigDir(self):
        envStorageLocation = self._getEnvStorageLocation()
        if envStorageLocation:
            return envStorageLocation

        xdgConfigHome = os.getenv('XDG_CONFIG_HOME')
        if xdgConfigHome:
            return xdgConfigHome

        homeDir = os.path.expanduser('~')
        if not homeDir or homeDir == '~':
            raise RuntimeError('Cannot determine user home directory/configuration directory')

        return os.path.join(homeDir, '.config')

    def getConfigPath(self, fileName):
        """
        Args:
            fileName: Name of the config file

        Returns:
            Path to the config file (may not exist)
        """
        return os.path.join(self.getConfigDir(), fileName)

    def ensureConfigDir(self):
        configDir = self.getConfigDir()
        os.makedirs(configDir, exist_ok=True)
        return configDir


class SecretGetter(Singleton):
    """
    Looks up secrets in environment variables first, then in the .secret JSON file
    of the configuration directory.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._secretData = None

    def _loadSecretFile(self):
        if self._secretData is not None:
            return

        secretPath = StorageLocator.getInstance().getConfigPath(self.secretFileName)

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logging.getLogger(__name__).warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}

    def get(self, key: str):
        """
        Args:
            key: Secret key to retrieve

        Returns:
            str or None: Secret value if found, None otherwise
        """
        value = os.getenv(key)
        if value:
            return value

        self._loadSecretFile()
        return self._secretData.get(key)


class AddonsManager(Singleton):
    """
    Loads the addons listed in addons.addons, in order, and calls their load() hook.
    Addons extend the core through UpduckEvent subscriptions only.
    """

    def initialize(self):
        self.logger = getLogger(__name__)
        self.loadedAddons = []
        self.failedAddons = []

    def getEnabledAddons(self):
        """
        Get the list of enabled addons, minus the disabled ones.

        Disabled addons come from addons.json ({"disabled": [...]}) in the configuration
        directory. If that file does not exist, the comma separated DISABLE_ADDONS
        environment variable is used instead.
        """
        try:
            addonsModule = importlib.import_module('addons')
        except ImportError as e:
            self.logger.debug(f"Could not import addons module: {e}")
            return []

        addonsList = getattr(addonsModule, 'addons', [])
        if not isinstance(addonsList, (list, tuple)):
            raise RuntimeError("addons.addons is not a list")

        disabledAddons = self._getDisabledAddons()
        return [addon for addon in addonsList if addon not in disabledAddons]

    def _getDisabledAddons(self):
        addonsConfigPath = StorageLocator.getInstance().getConfigPath('addons.json')

        if os.path.exists(addonsConfigPath):
            try:
                with open(addonsConfigPath, 'r', encoding='utf-8') as f:
                    addonsConfig = json.load(f)
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
                self.logger.warning(f"Could not read addons.json config: {e}")
                addonsConfig = None

            if isinstance(addonsConfig, dict):
                configDisabled = addonsConfig.get('disabled', [])
                if not isinstance(configDisabled, (list, tuple)):
                    self.logger.warning(f"addons.json 'disabled' field should be an array, got: {type(configDisabled)}")
                    return set()

                return {addon.strip() for addon in configDisabled if isinstance(addon, str) and addon.strip()}

        envDisabled = os.getenv('DISABLE_ADDONS', '')
        return {addon.strip() for addon in envDisabled.split(',') if addon.strip()}

    def loadAddon(self, addonName):
        """
        Load a single addon by name. Returns True if successfully loaded, False otherwise.
        """
        if addonName in self.loadedAddons:
            return True

        if addonName in [name for name, _ in self.failedAddons]:
            return False

        try:
            addonModule = importlib.import_module(f'addons.{addonName}')

            loadFunction = getattr(addonModule, 'load', None)
            if callable(loadFunction):
                loadFunction()

            self.loadedAddons.append(addonName)
            self.logger.debug(f"Successfully loaded addon: {addonName}")
            return True

        except ImportError as e:
            self.logger.warning(f"Could not import addon {addonName}: {e}")
            self.failedAddons.append((addonName, str(e)))
            return False
        except Exception as e:
            self.logger.error(f"Error loading addon {addonName}: {e}", exc_info=True)
            self.failedAddons.append((addonName, str(e)))
            if os.getenv('RAISE_EXCEPTION') == "True":
                raise

            return False

    def loadAllAddons(self):
        for addonName in self.getEnabledAddons():
            self.loadAddon(addonName)

    def isAddonLoaded(self, addonName):
        return addonName in self.loadedAddons

    def getLoadedAddons(self):
        return self.loadedAddons[:]

    def reset(self):
        self.loadedAddons.clear()
        self.failedAddons.clear()


# Event pattern: RESTful + /[action] (create, update, get, delete, others...)
class UpduckEvent:
    cliArgumentsGlobalOptionsRegister = Event('/cli/arguments/global/options/create')
    cliArgumentsStore = Event('/cli/arguments/get')

    serverStarted = Event('/server/start')
    serverStopping = Event('/server/stop')


def registerEvents():
    eventService = EventService.getInstance()

    for value in vars(UpduckEvent).values():
        if isinstance(value, Event):
            eventService.register(value.key)


registerEvents()
