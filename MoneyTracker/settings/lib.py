"""Settings library for the sync engine configuration.

Provides:
    - Schema validation and enforcement for settings.json structure.
    - Loading, saving, reverting, and managing application settings.
    - Application paths for the settings file, the encrypted cache and its key.
"""

import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'MoneyTracker'

#: Environment variable overriding the application data directory
CONFIG_DIR_ENV_KEY: str = 'MONEYTRACKER_CONFIG_DIR'

FAMILY_NAMES: List[str] = ['transactions', 'budgets', 'goals', 'notifications']

TRANSACTION_LOAD_LEVELS: List[str] = ['month', 'all']

METADATA_KEYS: List[str] = [
    'locale',
    'currency',
    'alert_threshold',
    'transaction_load',
]

SYNC_KEYS: List[str] = [
    'max_attempts',
    'wait_seconds',
    'backoff',
    'poll_interval',
]

SETTINGS_SCHEMA: Dict[str, Any] = {
    'cache': {
        'type': dict,
        'required': True,
        'required_keys': FAMILY_NAMES,
        'value_type': (int, float),
    },
    'sync': {
        'type': dict,
        'required': True,
        'required_keys': SYNC_KEYS,
        'item_schema': {
            'max_attempts': {'type': int, 'required': True},
            'wait_seconds': {'type': (int, float), 'required': True},
            'backoff': {'type': (int, float), 'required': True},
            'poll_interval': {'type': (int, float), 'required': True},
        }
    },
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'spreadsheet_id': {'type': str, 'required': True},
            'worksheets': {'type': dict, 'required': True},
        }
    },
    'metadata': {
        'type': dict,
        'required': True,
        'required_keys': METADATA_KEYS,
        'item_schema': {
            'locale': {'type': str, 'required': True},
            'currency': {'type': str, 'required': True},
            'alert_threshold': {'type': int, 'required': True},
            'transaction_load': {'type': str, 'required': True, 'allowed_values': TRANSACTION_LOAD_LEVELS},
        }
    },
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_cache(cache_dict: Dict[str, Any], specs: Dict[str, Any]) -> None:
    """Validate the 'cache' section of the settings.

    Ensures every entity family has a positive time-to-live, given in hours.

    Args:
        cache_dict: Mapping of entity family names to TTL hours.
        specs: Schema dict containing 'required_keys'.

    Raises:
        ValueError: If a family is missing or its TTL is not positive.
        TypeError: If a TTL is not a number.
    """
    logging.debug('Validating "cache" section.')
    missing = [k for k in specs['required_keys'] if k not in cache_dict]
    if missing:
        msg: str = f'cache is missing TTLs for {missing}.'
        logging.error(msg)
        raise ValueError(msg)
    for k, v in cache_dict.items():
        if not _is_number(v):
            msg = f'TTL of "{k}" must be a number of hours, got {type(v)}.'
            logging.error(msg)
            raise TypeError(msg)
        if v <= 0:
            msg = f'TTL of "{k}" must be positive, got {v}.'
            logging.error(msg)
            raise ValueError(msg)


def _validate_items(section: str, section_dict: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the fields of a settings section against its item schema.

    Args:
        section: Section name, used in error messages.
        section_dict: The section data.
        item_schema: Dict describing required fields, types and allowed values.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing or its value is not allowed.
    """
    logging.debug(f'Validating "{section}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section_dict:
            msg: str = f'"{section}" is missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section_dict:
            continue

        value = section_dict[field]
        _type = field_specs['type']
        if isinstance(value, bool) and _type is not bool:
            msg = f'"{section}" field "{field}" must be {_type}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, _type):
            msg = f'"{section}" field "{field}" must be {_type}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)
        allowed = field_specs.get('allowed_values')
        if allowed and value not in allowed:
            msg = f'"{section}" field "{field}" must be one of {allowed}, got "{value}".'
            logging.error(msg)
            raise ValueError(msg)


def _validate_worksheets(worksheets: Dict[str, Any]) -> None:
    logging.debug('Validating "remote.worksheets".')
    for family in FAMILY_NAMES:
        if not isinstance(worksheets.get(family), str) or not worksheets.get(family):
            msg: str = f'Worksheet name for "{family}" must be a non-empty string.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default settings template is in place.

    The application data directory comes from Qt's AppDataLocation unless ``root`` is given
    or the ``MONEYTRACKER_CONFIG_DIR`` environment variable is set.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        if root is None:
            root = os.environ.get(CONFIG_DIR_ENV_KEY) or None
        if root is None:
            root = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(root)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.cache_dir: pathlib.Path = app_data_dir / 'cache'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.key_path: pathlib.Path = self.config_dir / 'cache.key'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare the configuration directories and files.

        Raises:
            FileNotFoundError: If the template directory or file is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.template_dir.exists():
            msg: str = f'Missing template directory: {self.template_dir}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        if not self.settings_template.exists():
            msg = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        if not self.config_dir.exists():
            logging.debug(f'Creating config directory: {self.config_dir}')
            self.config_dir.mkdir(parents=True, exist_ok=True)

        if not self.cache_dir.exists():
            logging.debug(f'Creating cache directory: {self.cache_dir}')
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        # Ensure valid settings exist even if we haven't yet set them up
        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the default template file.

        Raises:
            FileNotFoundError: If the settings template file is missing.
        """
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        if not self.settings_template.exists():
            msg: str = f'Settings template not found: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save settings.json sections.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        super().__init__(root=root)

        self._signals_blocked: bool = False

        self.settings_data: Dict[str, Any] = {}
        for k in SETTINGS_SCHEMA.keys():
            self.settings_data[k] = {}

        self.init_data()

    def __getitem__(self, key: str) -> Any:
        """Retrieve a metadata value using dictionary-style access.

        Args:
            key: Metadata key to retrieve.

        Returns:
            Value stored for the metadata key, or None if it has the wrong type.

        Raises:
            KeyError: If key is not in METADATA_KEYS.
        """
        if key not in METADATA_KEYS:
            raise KeyError(f'Invalid metadata key: {key}, must be one of {METADATA_KEYS}')

        _type = SETTINGS_SCHEMA['metadata']['item_schema'][key]['type']
        v = self.settings_data['metadata'].get(key)

        if not isinstance(v, _type):
            logging.error(f'Metadata key "{key}" is not of type {_type}, got {type(v)}.')
            return None

        return v

    def __setitem__(self, key: str, value: Any) -> None:
        """Assign a metadata value using dictionary-style access and persist it.

        Args:
            key: Metadata key to set.
            value: Value to assign to the metadata key.

        Raises:
            KeyError: If key is not in METADATA_KEYS.
            ValueError: If the value cannot be converted to the expected type.
        """
        if key not in METADATA_KEYS:
            raise KeyError(f'Invalid metadata key: {key}, must be one of {METADATA_KEYS}')

        _type = SETTINGS_SCHEMA['metadata']['item_schema'][key]['type']
        if not isinstance(value, _type):
            logging.warning(f'Metadata key "{key}" is not of type {_type}, got {type(value)}.')
            try:
                value = _type(value)
            except (TypeError, ValueError):
                logging.error(f'Cannot convert "{value}" to {_type}.')
                raise

        data = self.settings_data['metadata'].copy()
        data[key] = value
        _validate_items('metadata', data, SETTINGS_SCHEMA['metadata']['item_schema'])

        self.settings_data['metadata'] = data
        self.save_section('metadata')

        if self._signals_blocked:
            return

        from ..signals import signals
        signals.metadataChanged.emit(key, value)

    def block_signals(self, v: bool) -> None:
        """Enable or disable emission of configuration change signals.

        Args:
            v: True to block signals, False to allow signals to emit.
        """
        self._signals_blocked = v

    def init_data(self) -> None:
        """Reload settings data, emitting change signals."""
        self.load_settings()

        if self._signals_blocked:
            return

        from ..signals import signals
        for section in SETTINGS_SCHEMA.keys():
            signals.configSectionChanged.emit(section)

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If settings.json file is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
            self.settings_data = data
            return self.settings_data

        except status.SettingsInvalidException:
            raise
        except Exception as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

    def validate_settings_data(self, data: Dict[str, Any] = None) -> None:
        """Validate settings data against the defined SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.settings_data.

        Raises:
            RuntimeError: If data is empty.
            status.SettingsInvalidException: If a required section is missing.
            TypeError, ValueError: If a section fails validation.
        """
        if data is None:
            data = self.settings_data
        if not data:
            raise RuntimeError('Settings data is empty.')

        logging.debug('Validating settings data against schema.')
        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise status.SettingsInvalidException(f'Missing required field: {field}')

            if not isinstance(data[field], specs['type']):
                raise status.SettingsInvalidException(
                    f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.')

            if field == 'cache':
                _validate_cache(data[field], specs)
            elif field == 'remote':
                _validate_items(field, data[field], specs['item_schema'])
                _validate_worksheets(data[field]['worksheets'])
            else:
                _validate_items(field, data[field], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Args:
            section_name: Key from the settings schema.

        Returns:
            A copied dict of the requested section data.

        Raises:
            KeyError: If section_name is not in settings_data.
        """
        return json.loads(json.dumps(self.settings_data[section_name]))

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a settings section.

        The previous section is restored if the new data does not validate.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unrecognized or the data is invalid.
            TypeError: If the data has invalid types.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data.get(section_name)

        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

        self.save_section(section_name)

        if self._signals_blocked:
            return

        from ..signals import signals
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Write a section to settings.json, preserving the other sections on disk.

        Args:
            section_name: Section to save.
        """
        logging.debug(f'Saving section "{section_name}" to "{self.settings_path}"')
        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (OSError, json.JSONDecodeError) as ex:
            logging.warning(f'Could not read existing settings, rewriting all sections: {ex}')
            data = {}

        data.update({k: v for k, v in self.settings_data.items() if k not in data})
        data[section_name] = self.settings_data[section_name]

        tmp_path = self.settings_path.with_suffix('.json.tmp')
        with tmp_path.open('w', encoding='utf-8') as f:
            json.dump(data, f, indent=4, ensure_ascii=False)
        os.replace(tmp_path, self.settings_path)

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is invalid or not present in the template.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)
        if section_name not in template_data:
            msg = f'Section "{section_name}" not found in template.'
            logging.error(msg)
            raise ValueError(msg)

        logging.debug(f'Reverting section "{section_name}" to template.')
        self.set_section(section_name, template_data[section_name])


settings = SettingsAPI()
