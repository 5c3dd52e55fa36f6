"""Settings library for the sync engine configuration.

Provides:
    - Schema validation and enforcement for the settings.json structure.
    - Loading, saving and reverting application settings.
    - Application paths for the settings file and the local store.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'FinanceTracker'

REMOTE_BACKENDS: List[str] = ['memory', 'sheets']

SETTINGS_SCHEMA: Dict[str, Any] = {
    'store': {
        'type': dict,
        'required': True,
        'item_schema': {
            'filename': {'type': str, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'operation_timeout': {'type': (int, float), 'required': True, 'min': 0.1},
            'sync_timeout': {'type': (int, float), 'required': True, 'min': 1},
            'max_conflict_attempts': {'type': int, 'required': True, 'min': 1},
            'debounce_interval': {'type': int, 'required': True, 'min': 0},
        }
    },
    'connectivity': {
        'type': dict,
        'required': True,
        'item_schema': {
            'probe_host': {'type': str, 'required': True},
            'probe_port': {'type': int, 'required': True, 'min': 1},
            'probe_interval': {'type': int, 'required': True, 'min': 100},
            'probe_timeout': {'type': int, 'required': True, 'min': 100},
            'stabilization_delay': {'type': int, 'required': True, 'min': 0},
            'remote_change_delay': {'type': int, 'required': True, 'min': 0},
            'refresh_interval': {'type': int, 'required': True, 'min': 0},
        }
    },
    'migration': {
        'type': dict,
        'required': True,
        'item_schema': {
            'backup_retention_seconds': {'type': int, 'required': True, 'min': 0},
        }
    },
    'maintenance': {
        'type': dict,
        'required': True,
        'item_schema': {
            'failed_retention_days': {'type': int, 'required': True, 'min': 1},
        }
    },
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'backend': {'type': str, 'required': True, 'allowed_values': REMOTE_BACKENDS},
            'spreadsheet_id': {'type': str, 'required': False},
            'worksheet': {'type': str, 'required': False},
            'service_account_path': {'type': str, 'required': False},
        }
    },
}


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate one settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section's data.
        item_schema: Dict describing required fields, types, lower bounds and allowed values.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing, below its minimum, or not an allowed value.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        # bool is an int subclass but never a valid number here
        if isinstance(value, bool) or not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)

        if 'min' in field_specs and value < field_specs['min']:
            msg = f'Section "{section_name}" field "{field}" must be >= {field_specs["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)

        if 'allowed_values' in field_specs and value not in field_specs['allowed_values']:
            msg = (
                f'Section "{section_name}" field "{field}" must be one of '
                f'{field_specs["allowed_values"]}, got "{value}".'
            )
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default settings template is in place.

    This class initializes paths for the settings template, the user settings file and
    the local store directory. Missing directories are created and the template is copied
    into the config directory on first run.
    """

    def __init__(self, app_data_dir: Optional[str] = None) -> None:
        """Set up application paths and ensure required directories and templates exist.

        Args:
            app_data_dir: Optional override of the Qt application data directory.
        """
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        if app_data_dir:
            app_data = pathlib.Path(app_data_dir)
        else:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data}')

        self.app_data_dir: pathlib.Path = app_data
        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data / 'config'
        self.db_dir: pathlib.Path = app_data / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare configuration directories and files.

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

        if not self.db_dir.exists():
            logging.debug(f'Creating db directory: {self.db_dir}')
            self.db_dir.mkdir(parents=True, exist_ok=True)

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

    def __init__(self, settings_path: Optional[str] = None, app_data_dir: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the settings data.

        Args:
            settings_path: Optional path to a custom settings.json file.
            app_data_dir: Optional override of the application data directory.
        """
        super().__init__(app_data_dir=app_data_dir)

        self.settings_path: pathlib.Path = pathlib.Path(settings_path) if settings_path else self.settings_path

        self.settings_data: Dict[str, Any] = {}
        for k in SETTINGS_SCHEMA.keys():
            self.settings_data[k] = {}

        self.load_settings()

    @property
    def store_path(self) -> pathlib.Path:
        """Path of the local store file."""
        return self.db_dir / self.settings_data['store']['filename']

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Returns:
            The loaded settings data dictionary.

        Raises:
            status.ConfigNotFoundException: If settings.json file is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.ConfigNotFoundException(str(self.settings_path))

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
        except (ValueError, TypeError, RuntimeError) as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def validate_settings_data(self, data: Dict[str, Any] = None) -> None:
        """Validate settings data against SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.settings_data.

        Raises:
            RuntimeError: If data is empty.
            ValueError: If a required section or field is missing or out of range.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.settings_data
        if not data:
            raise RuntimeError('Settings data is empty.')

        logging.debug('Validating settings data against schema.')
        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                msg: str = f'Missing required section: {field}'
                logging.error(msg)
                raise ValueError(msg)

            if field not in data:
                continue

            if not isinstance(data[field], specs['type']):
                msg = f'Section "{field}" must be {specs["type"]}, got {type(data[field])}.'
                logging.error(msg)
                raise TypeError(msg)

            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Args:
            section_name: Section name from the settings schema.

        Returns:
            A copied dict of the requested section data.

        Raises:
            KeyError: If section_name is not in settings_data.
        """
        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace and persist a settings section.

        The previous section data is restored when the new data fails validation.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unrecognized or the data fails validation.
            TypeError: If the data has the wrong types.
        """
        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data.get(section_name).copy()

        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is invalid or not present in the template.
        """
        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.settings_data[section_name] = template_data[section_name]
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single settings section to the settings file.

        Args:
            section_name: The section to save.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.settings_data[section_name]

        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)
