import os
import time
from pathlib import Path

import yaml

# Default user config location, outside the installed package
USER_CONFIG_PATH = os.path.join(os.path.expanduser('~'), '.kaiwa', 'config.yaml')

# Environment keys materialized as accounts when no account of that type exists
ENV_ACCOUNT_KEYS = {
    'groq': 'GROQ_API_KEY',
    'openai': 'OPENAI_API_KEY',
}


class ConfigManager:
    """Manages application configuration settings."""
    _instance = None

    def __init__(self):
        """Initialize the ConfigManager instance."""
        self.config = None
        self.schema = None
        self.config_path = USER_CONFIG_PATH

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        """Initialize the ConfigManager with the given schema and user config paths."""
        if cls._instance is not None:
            raise Exception("This class is a singleton!")
        else:
            cls._instance = cls()
            if config_path:
                cls._instance.config_path = config_path
                if not os.path.isfile(config_path):
                    print(f"Config file not found: {config_path}. Using default configuration.")
            cls._instance.schema = cls._instance.load_config_schema(schema_path)
            cls._instance.config = cls._instance.load_default_config()
            cls._instance.load_user_config(cls._instance.config_path)

    @classmethod
    def reset(cls):
        """Drop the singleton so the next access re-initializes it."""
        cls._instance = None

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        if cls._instance.config is None:  # type: ignore
            cls._instance.config = {}  # type: ignore
        return cls._instance  # type: ignore

    @classmethod
    def get_config_section(cls, *keys):
        """Get a specific section of the configuration."""
        instance = cls.get_instance()

        section = instance.config
        if not section:
            return {}
        for key in keys:
            if isinstance(section, dict) and key in section:
                section = section[key]
            else:
                return {}
        return section

    @classmethod
    def get_config_value(cls, *keys):
        """Get a specific configuration value using nested keys."""
        instance = cls.get_instance()

        value = instance.config
        if not value:
            return None
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    @classmethod
    def set_config_value(cls, value, *keys):
        """Set a specific configuration value using nested keys."""
        instance = cls.get_instance()

        config: dict = instance.config
        if not config:
            instance.config = {}
            config = instance.config

        for key in keys[:-1]:
            if key not in config or not isinstance(config[key], dict):
                config[key] = {}
            config = config[key]  # type: ignore
        config[keys[-1]] = value  # type: ignore

    @classmethod
    def get_config(cls):
        """
        Snapshot of what the voice pipeline reads.

        Returns:
            {"accounts": [account dicts], "settings": {voice, recording, pipeline sections}}
        """
        instance = cls.get_instance()
        accounts = [dict(a) for a in (instance.config.get('accounts') or []) if isinstance(a, dict)]
        configured_types = {a.get('type') for a in accounts if a.get('apiKey')}
        for kind, env_key in ENV_ACCOUNT_KEYS.items():
            api_key = os.environ.get(env_key)
            if api_key and kind not in configured_types:
                accounts.append({'name': kind, 'type': kind, 'apiKey': api_key})

        settings = dict(cls.get_config_section('voice') or {})
        settings['recording'] = dict(cls.get_config_section('recording_options') or {})
        settings['pipeline'] = dict(cls.get_config_section('pipeline') or {})
        return {'accounts': accounts, 'settings': settings}

    @staticmethod
    def load_config_schema(schema_path=None):
        """Load the configuration schema from a YAML file."""
        if schema_path is None:
            base_dir = os.path.dirname(os.path.abspath(__file__))
            schema_path = os.path.join(base_dir, 'config_schema.yaml')

        with open(schema_path, 'r') as file:
            schema = yaml.safe_load(file)
        return schema

    def load_default_config(self):
        """Load default configuration values from the schema."""
        def extract_value(item):
            if isinstance(item, dict):
                if 'value' in item:
                    return item['value']
                else:
                    return {k: extract_value(v) for k, v in item.items()}
            return item

        config = {}
        for category, settings in self.schema.items():
            config[category] = extract_value(settings)
        return config

    def _validate_config_value(self, value, schema_item, path):
        """Validate a config value against its schema definition."""
        if not isinstance(schema_item, dict) or 'type' not in schema_item:
            # Not a leaf node, skip validation
            return True

        expected_type = schema_item['type']
        type_map = {
            'str': (str,),
            'int': (int,),
            'float': (int, float),
            'bool': (bool,),
            'list': (list,),
        }

        # Allow None for optional values
        if value is None:
            return True

        if expected_type in type_map:
            expected_python_types = type_map[expected_type]
            # bool is an int subclass; only accept it where bool is expected
            wrong_bool = isinstance(value, bool) and expected_type != 'bool'
            if wrong_bool or not isinstance(value, expected_python_types):
                print(f"[!] Config validation warning: '{path}' should be {expected_type}, got {type(value).__name__}. Using default.")
                return False

        if 'options' in schema_item and value not in schema_item['options']:
            print(f"[!] Config validation warning: '{path}' value '{value}' not in allowed options {schema_item['options']}. Using default.")
            return False

        return True

    def _validate_config_section(self, user_section, schema_section, path=""):
        """Recursively validate a config section against schema."""
        if not isinstance(schema_section, dict) or not isinstance(user_section, dict):
            return

        for key, schema_value in schema_section.items():
            current_path = f"{path}.{key}" if path else key

            if key not in user_section:
                continue

            user_value = user_section[key]

            # If schema_value has 'type', it's a leaf node - validate it
            if isinstance(schema_value, dict) and 'type' in schema_value:
                if not self._validate_config_value(user_value, schema_value, current_path):
                    # Reset to default value
                    user_section[key] = schema_value.get('value')
            elif isinstance(schema_value, dict) and isinstance(user_value, dict):
                self._validate_config_section(user_value, schema_value, current_path)

    def load_user_config(self, config_path=None):
        """Load user configuration and merge with default config."""
        def deep_update(source, overrides):
            for key, value in overrides.items():
                if isinstance(value, dict) and isinstance(source.get(key), dict):
                    deep_update(source[key], value)
                else:
                    source[key] = value

        config_path = config_path or self.config_path
        if config_path and os.path.isfile(config_path):
            try:
                with open(config_path, 'r') as file:
                    user_config = yaml.safe_load(file) or {}
                    # Validate before merging
                    self._validate_config_section(user_config, self.schema)
                    deep_update(self.config, user_config)
            except yaml.YAMLError:
                print("Error in configuration file. Using default configuration.")

    @classmethod
    def save_config(cls, config_path=None):
        """Save the current configuration to a YAML file (atomic write with retries)."""
        instance = cls.get_instance()
        filepath = Path(config_path or instance.config_path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        temp_path = filepath.with_suffix('.tmp')

        # Write to temp file first
        with open(temp_path, 'w', encoding='utf-8') as file:
            yaml.dump(instance.config, file, default_flow_style=False)
            file.flush()
            os.fsync(file.fileno())

        # Try to replace the original file, with retries for Windows file locks
        max_retries = 3
        retry_delay = 0.1
        for attempt in range(max_retries):
            try:
                temp_path.replace(filepath)  # Atomic rename
                break
            except PermissionError as e:
                if attempt < max_retries - 1:
                    time.sleep(retry_delay)
                    retry_delay *= 2  # Exponential backoff
                else:
                    try:
                        temp_path.unlink()
                    except OSError:
                        pass
                    raise RuntimeError(f"Failed to save config due to file lock: {e}")

    @classmethod
    def reload_config(cls):
        """
        Reload the configuration from the file.
        """
        instance = cls.get_instance()
        instance.config = instance.load_default_config()
        instance.load_user_config()

    @classmethod
    def console_print(cls, message):
        """Print a message to the console if enabled in the configuration."""
        if cls._instance and (cls._instance.config or {}).get('misc', {}).get('print_to_terminal'):
            print(message)
