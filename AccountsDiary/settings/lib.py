"""Settings library for the client and server configuration.

Provides:
    - Schema validation for the client.json structure.
    - Loading, saving and reverting configuration sections.
    - Environment overrides for the server section.
    - Application paths for the config, auth and per-user store directories.
"""

import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'AccountsDiary'

STORE_PREFIX: str = 'AccountsDiaryDB'

CLIENT_SCHEMA: Dict[str, Any] = {
    'api': {
        'type': dict,
        'required': True,
        'item_schema': {
            'url': {'type': str, 'required': True},
            'timeout': {'type': (int, float), 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'sync_on_login': {'type': bool, 'required': True},
            'clear_other_users': {'type': bool, 'required': True},
        }
    },
    'server': {
        'type': dict,
        'required': True,
        'item_schema': {
            'database_url': {'type': str, 'required': True},
            'jwt_secret': {'type': str, 'required': True},
            'token_days': {'type': int, 'required': True},
            'max_rows': {'type': int, 'required': True},
        }
    },
}

# Environment variables that take precedence over the stored server section
ENV_OVERRIDES: Dict[str, tuple] = {
    'DATABASE_URL': ('server', 'database_url'),
    'JWT_SECRET': ('server', 'jwt_secret'),
}


def _validate_section(section_name: str, section_data: Any, item_schema: Dict[str, Any]) -> None:
    """Validate a single configuration section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section_data: The section payload.
        item_schema: Dict describing required fields and their types.

    Raises:
        TypeError: If the section or one of its values has the wrong type.
        ValueError: If a required field is missing.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section_data, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section_data:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section_data:
            continue

        value = section_data[field]
        expected = field_specs['type']
        # bool is an int subclass, only accept it where a bool is expected
        if isinstance(value, bool) and expected is not bool:
            msg = f'Section "{section_name}" field "{field}" must be {expected}, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, expected):
            msg = (
                f'Section "{section_name}" field "{field}" must be {expected}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    Paths are rooted in the platform's application data location. The per-user local
    stores live in the db directory, one file per owner.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.client_template: pathlib.Path = self.template_dir / 'client.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.client_path: pathlib.Path = self.config_dir / 'client.json'
        self.session_path: pathlib.Path = self.auth_dir / 'session.json'
        self.legacy_db_path: pathlib.Path = self.db_dir / f'{STORE_PREFIX}.db'
        self.server_db_path: pathlib.Path = self.db_dir / 'server.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and create the config, auth and db directories.

        Raises:
            FileNotFoundError: If the template directory or client template is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.template_dir.exists():
            msg: str = f'Missing template directory: {self.template_dir}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        if not self.client_template.exists():
            msg = f'Missing client template: {self.client_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for d in (self.config_dir, self.auth_dir, self.db_dir):
            if not d.exists():
                logging.debug(f'Creating directory: {d}')
                d.mkdir(parents=True, exist_ok=True)

        if not self.client_path.exists():
            logging.debug(f'Copying default client config from template to {self.client_path}')
            shutil.copy(self.client_template, self.client_path)

    def db_path(self, owner: str) -> pathlib.Path:
        """Return the path of the local store file belonging to `owner`.

        Args:
            owner: The user id owning the store.

        Returns:
            pathlib.Path: Path to ``AccountsDiaryDB_<owner>.db`` inside the db directory.
        """
        if not owner:
            raise ValueError('Owner must be a non-empty string.')
        return self.db_dir / f'{STORE_PREFIX}_{owner}.db'

    def owner_from_db_path(self, path: pathlib.Path) -> Optional[str]:
        """Return the owner encoded in a store file name, or None for foreign files."""
        stem = pathlib.Path(path).stem
        prefix = f'{STORE_PREFIX}_'
        if pathlib.Path(path).suffix != '.db' or not stem.startswith(prefix):
            return None
        return stem[len(prefix):] or None

    def revert_client_to_template(self) -> None:
        """Restore client.json from the default template file.

        Raises:
            FileNotFoundError: If the template file is missing.
        """
        logging.debug(f'Reverting client config to template: {self.client_template}')
        if not self.client_template.exists():
            msg: str = f'Client template not found: {self.client_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.client_template, self.client_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save client.json sections.
    """

    def __init__(self, client_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the client configuration.

        Args:
            client_path: Optional path to a custom client.json file.
        """
        super().__init__()

        self.client_path: pathlib.Path = pathlib.Path(client_path) if client_path else self.client_path

        self.client_data: Dict[str, Any] = {}
        for k in CLIENT_SCHEMA.keys():
            self.client_data[k] = {}

        self.load_client()

    def load_client(self) -> Dict[str, Any]:
        """Load client.json from disk and validate it against the schema.

        Returns:
            The loaded configuration dictionary.

        Raises:
            status.ClientConfigNotFoundException: If client.json is missing.
            status.ClientConfigInvalidException: If parsing or validation fails.
        """
        logging.debug(f'Loading client config from "{self.client_path}"')
        if not self.client_path.exists():
            raise status.ClientConfigNotFoundException(str(self.client_path))

        try:
            with self.client_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_client_data(data)
        except (ValueError, TypeError) as ex:
            raise status.ClientConfigInvalidException(str(ex)) from ex

        self.client_data = data
        return self.client_data

    def validate_client_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate configuration data against CLIENT_SCHEMA.

        Args:
            data (dict, optional): Data to validate. Defaults to the loaded client data.

        Raises:
            ValueError: If a required section or field is missing.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.client_data
        if not isinstance(data, dict):
            raise TypeError('Client config must be a JSON object.')

        for field, specs in CLIENT_SCHEMA.items():
            if specs.get('required') and field not in data:
                msg: str = f'Missing required section: {field}'
                logging.error(msg)
                raise ValueError(msg)
            if field not in data:
                continue
            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Client config is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a configuration section.

        Environment overrides are applied on top of the stored values.

        Args:
            section_name: A key of CLIENT_SCHEMA.

        Returns:
            A copied dict of the requested section data.

        Raises:
            KeyError: If section_name is unknown.
        """
        if section_name not in CLIENT_SCHEMA:
            raise KeyError(f'Unknown section: "{section_name}", must be one of {list(CLIENT_SCHEMA)}')

        data = dict(self.client_data.get(section_name, {}))
        for env_key, (section, key) in ENV_OVERRIDES.items():
            if section != section_name:
                continue
            value = os.environ.get(env_key)
            if value:
                data[key] = value
        return data

    def get(self, section_name: str, key: str, default: Any = None) -> Any:
        """Shortcut returning a single value from a section."""
        return self.get_section(section_name).get(key, default)

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a configuration section.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unknown or the data misses required fields.
            TypeError: If a value has the wrong type.
        """
        if section_name not in CLIENT_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        _validate_section(section_name, new_data, CLIENT_SCHEMA[section_name]['item_schema'])

        self.client_data[section_name] = dict(new_data)
        self.save_section(section_name)

        from ..actions import signals
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is unknown or missing from the template.
        """
        if section_name not in CLIENT_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.client_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.client_data[section_name] = template_data[section_name]
        self.save_section(section_name)

        from ..actions import signals
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to client.json.

        Args:
            section_name: The section to save.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in CLIENT_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        original_data: Dict[str, Any] = {}
        if self.client_path.exists():
            with self.client_path.open('r', encoding='utf-8') as f:
                original_data = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.client_data[section_name]

        logging.debug(f'Saving section "{section_name}" to "{self.client_path}"')
        with self.client_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)

    def save_all(self) -> None:
        """Validate and write the whole client configuration.

        Raises:
            ValueError, TypeError: On validation failure; nothing is written.
        """
        logging.debug('Saving all settings.')
        self.validate_client_data()
        with self.client_path.open('w', encoding='utf-8') as f:
            json.dump(self.client_data, f, indent=4, ensure_ascii=False)

    def list_store_files(self) -> List[pathlib.Path]:
        """Return the per-owner store files found in the db directory."""
        if not self.db_dir.exists():
            return []
        return sorted(p for p in self.db_dir.glob(f'{STORE_PREFIX}_*.db') if self.owner_from_db_path(p))


settings: SettingsAPI = SettingsAPI()
