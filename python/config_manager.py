"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class TokenConfig:
    """Verification token policy"""
    validity_hours: int = 72
    token_bytes: int = 32


@dataclass
class ImportConfig:
    """Spreadsheet import settings"""
    progress_every: int = 1
    max_upload_size_mb: int = 10


@dataclass
class MailConfig:
    """Outbound verification mail settings"""
    transport: str = "console"  # console, smtp
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_address: str = "no-reply@localhost"
    subject: str = "Please verify your contact details"
    timeout_seconds: float = 10.0
    retry_attempts: int = 3
    max_workers: int = 4
    verification_base_url: str = "http://localhost:5173"


@dataclass
class AuthConfig:
    """Admin authentication settings"""
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 480
    two_factor_token_expire_minutes: int = 5
    totp_valid_window: int = 1


@dataclass
class ValidationConfig:
    """Contact field validation limits"""
    name_max_length: int = 200
    field_max_length: int = 500
    email_max_length: int = 254


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = ""
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs"
    security_log_file: bool = True


@dataclass
class ApiConfig:
    """Pagination limits for admin listings"""
    default_page_size: int = 10
    max_page_size: int = 100


@dataclass
class StatsConfig:
    """Dashboard statistics settings"""
    recent_window_days: int = 7


VALID_TRANSPORTS = ("console", "smtp")


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.tokens: TokenConfig = TokenConfig()
        self.importing: ImportConfig = ImportConfig()
        self.mail: MailConfig = MailConfig()
        self.auth: AuthConfig = AuthConfig()
        self.validation: ValidationConfig = ValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.api: ApiConfig = ApiConfig()
        self.stats: StatsConfig = StatsConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._apply_env_overrides()
            self._validate()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_tokens()
        self._parse_importing()
        self._parse_mail()
        self._parse_auth()
        self._parse_validation()
        self._parse_logging()
        self._parse_api()
        self._parse_stats()
        self._apply_env_overrides()
        self._validate()

    def _parse_tokens(self) -> None:
        """Parse token configuration"""
        cfg = self._raw_config.get('tokens', {})
        self.tokens = TokenConfig(
            validity_hours=cfg.get('validity_hours', 72),
            token_bytes=cfg.get('token_bytes', 32)
        )

    def _parse_importing(self) -> None:
        """Parse import configuration"""
        cfg = self._raw_config.get('import', {})
        self.importing = ImportConfig(
            progress_every=cfg.get('progress_every', 1),
            max_upload_size_mb=cfg.get('max_upload_size_mb', 10)
        )

    def _parse_mail(self) -> None:
        """Parse mail configuration"""
        cfg = self._raw_config.get('mail', {})
        defaults = MailConfig()
        self.mail = MailConfig(
            transport=str(cfg.get('transport', defaults.transport)).lower(),
            host=cfg.get('host', defaults.host),
            port=cfg.get('port', defaults.port),
            username=cfg.get('username', defaults.username),
            password=cfg.get('password', defaults.password),
            use_tls=cfg.get('use_tls', defaults.use_tls),
            from_address=cfg.get('from_address', defaults.from_address),
            subject=cfg.get('subject', defaults.subject),
            timeout_seconds=cfg.get('timeout_seconds', defaults.timeout_seconds),
            retry_attempts=cfg.get('retry_attempts', defaults.retry_attempts),
            max_workers=cfg.get('max_workers', defaults.max_workers),
            verification_base_url=cfg.get('verification_base_url', defaults.verification_base_url)
        )

    def _parse_auth(self) -> None:
        """Parse authentication configuration"""
        cfg = self._raw_config.get('auth', {})
        defaults = AuthConfig()
        self.auth = AuthConfig(
            secret_key=cfg.get('secret_key', defaults.secret_key),
            algorithm=cfg.get('algorithm', defaults.algorithm),
            access_token_expire_minutes=cfg.get(
                'access_token_expire_minutes', defaults.access_token_expire_minutes),
            two_factor_token_expire_minutes=cfg.get(
                'two_factor_token_expire_minutes', defaults.two_factor_token_expire_minutes),
            totp_valid_window=cfg.get('totp_valid_window', defaults.totp_valid_window)
        )

    def _parse_validation(self) -> None:
        """Parse validation configuration"""
        cfg = self._raw_config.get('validation', {})
        self.validation = ValidationConfig(
            name_max_length=cfg.get('name_max_length', 200),
            field_max_length=cfg.get('field_max_length', 500),
            email_max_length=cfg.get('email_max_length', 254)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', ''),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            security_log_dir=cfg.get('security_log_dir', 'logs'),
            security_log_file=cfg.get('security_log_file', True)
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            default_page_size=cfg.get('default_page_size', 10),
            max_page_size=cfg.get('max_page_size', 100)
        )

    def _parse_stats(self) -> None:
        """Parse statistics configuration"""
        cfg = self._raw_config.get('stats', {})
        self.stats = StatsConfig(
            recent_window_days=cfg.get('recent_window_days', 7)
        )

    def _apply_env_overrides(self) -> None:
        """Secrets and deployment URLs may come from the environment"""
        secret_key = os.getenv("SECRET_KEY")
        if secret_key:
            self.auth.secret_key = secret_key
        smtp_password = os.getenv("SMTP_PASSWORD")
        if smtp_password:
            self.mail.password = smtp_password
        base_url = os.getenv("VERIFICATION_BASE_URL")
        if base_url:
            self.mail.verification_base_url = base_url

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'tokens': {
                'validity_hours': self.tokens.validity_hours,
                'token_bytes': self.tokens.token_bytes
            },
            'import': {
                'progress_every': self.importing.progress_every,
                'max_upload_size_mb': self.importing.max_upload_size_mb
            },
            'mail': {
                'transport': self.mail.transport,
                'host': self.mail.host,
                'port': self.mail.port,
                'from_address': self.mail.from_address,
                'verification_base_url': self.mail.verification_base_url
            },
            'auth': {
                'algorithm': self.auth.algorithm,
                'access_token_expire_minutes': self.auth.access_token_expire_minutes
            },
            'api': {
                'default_page_size': self.api.default_page_size,
                'max_page_size': self.api.max_page_size
            },
            'stats': {
                'recent_window_days': self.stats.recent_window_days
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []
        if self.tokens.validity_hours <= 0:
            errors.append("tokens.validity_hours must be positive")
        if self.tokens.token_bytes < 16:
            errors.append("tokens.token_bytes must be at least 16")
        if self.importing.progress_every <= 0:
            errors.append("import.progress_every must be positive")
        if self.importing.max_upload_size_mb <= 0:
            errors.append("import.max_upload_size_mb must be positive")
        if self.mail.transport not in VALID_TRANSPORTS:
            errors.append(f"mail.transport must be one of {', '.join(VALID_TRANSPORTS)}")
        if self.mail.retry_attempts < 1:
            errors.append("mail.retry_attempts must be at least 1")
        if self.mail.max_workers < 1:
            errors.append("mail.max_workers must be at least 1")
        if self.api.max_page_size < self.api.default_page_size:
            errors.append("api.max_page_size must not be smaller than api.default_page_size")
        if self.stats.recent_window_days <= 0:
            errors.append("stats.recent_window_days must be positive")

        if errors:
            raise ConfigurationError("; ".join(errors))


def setup_logging(config: LoggingConfig) -> None:
    """Apply the logging section to the root logger"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(config.level).upper(), logging.INFO))

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        already_attached = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path.resolve()
            for h in root.handlers
        )
        if not already_attached:
            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(config.format))
            root.addHandler(file_handler)

    if not config.console:
        for handler in list(root.handlers):
            if type(handler) is logging.StreamHandler:
                root.removeHandler(handler)


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
