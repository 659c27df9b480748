"""Deployment configuration.

Everything the stack and the artifact patchers need is resolved once, here,
into frozen attrs classes. Each key is looked up in the CDK context first,
then the process environment, then the ``.env.aws`` credentials file, and
finally falls back to the default in :mod:`common.constants`.
"""
import os
import re
from typing import Any, Callable, Mapping, Optional

from attrs import define, field
from dotenv import dotenv_values

import common.constants as constants
from common.errors import ConfigurationError

ContextLookup = Callable[[str], Any]

_STAGE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-zA-Z-]*:iam::\d{12}:role/[\w+=,.@/-]+$")
_TRUTHY = {"1", "true", "yes", "on"}


def _valid_stage(instance, attribute, value: str) -> None:
    validate_stage(value)


def _valid_role_arn(instance, attribute, value: str) -> None:
    if not value:
        raise ConfigurationError(
            "IAM role ARN is not set: pass -c role_arn=..., set IAM_ROLE_ARN, "
            f"or add IAM_role_arn to {constants.CREDENTIALS_FILE}"
        )
    if not _ROLE_ARN_PATTERN.match(value):
        raise ConfigurationError(f"{value!r} is not an IAM role ARN")


def _positive(instance, attribute, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigurationError(f"{attribute.name} must be a positive integer, got {value!r}")


def _valid_port(instance, attribute, value: int) -> None:
    _positive(instance, attribute, value)
    if value > 65535:
        raise ConfigurationError(f"{attribute.name} must be at most 65535, got {value}")


def _non_empty(instance, attribute, value: str) -> None:
    if not value:
        raise ConfigurationError(f"{attribute.name} must not be empty")


def _valid_instance_class(instance, attribute, value: str) -> None:
    if not value.startswith("db."):
        raise ConfigurationError(f"{attribute.name} must look like db.<class>.<size>, got {value!r}")


@define(slots=True, frozen=True)
class DatabaseConfig:
    instance_id: str = field(default=constants.DB_INSTANCE_ID, validator=_non_empty)
    db_name: str = field(default=constants.DB_NAME, validator=_non_empty)
    db_user: str = field(default=constants.DB_USER, validator=_non_empty)
    db_password: Optional[str] = field(
        default=None,
        repr=False,
        metadata={"description": "Master password; a generated secret is used when unset"},
    )
    instance_class: str = field(default=constants.DB_INSTANCE_CLASS, validator=_valid_instance_class)
    allocated_storage: int = field(default=constants.DB_ALLOCATED_STORAGE, validator=_positive)
    engine_version: str = field(default=constants.DB_ENGINE_VERSION, validator=_non_empty)
    port: int = field(default=constants.DB_PORT, validator=_valid_port)

    def describe(self) -> dict:
        """Loggable view of the settings, without the password."""
        return {
            "instance_id": self.instance_id,
            "db_name": self.db_name,
            "db_user": self.db_user,
            "instance_class": self.instance_class,
            "allocated_storage": self.allocated_storage,
            "engine_version": self.engine_version,
            "port": self.port,
            "password_source": "config" if self.db_password else "generated-secret",
        }


@define(slots=True, frozen=True)
class DeploymentConfig:
    role_arn: str = field(validator=_valid_role_arn)
    stage: str = field(
        default=constants.DEFAULT_STAGE,
        validator=_valid_stage,
        metadata={"description": "API Gateway stage, also the asset path prefix"},
    )
    region: str = field(default=constants.DEFAULT_REGION, validator=_non_empty)
    account: Optional[str] = field(default=None)
    database: DatabaseConfig = field(factory=DatabaseConfig)
    image_directory: str = field(
        default=constants.IMAGE_DIRECTORY,
        validator=_non_empty,
        metadata={"description": "Docker build context of the backend image"},
    )
    use_default_vpc: bool = field(default=False)
    function_timeout: int = field(default=constants.FUNCTION_TIMEOUT_SECONDS, validator=_positive)
    function_memory: int = field(default=constants.FUNCTION_MEMORY_MB, validator=_positive)
    log_retention_days: int = field(default=constants.LOG_RETENTION_DAYS, validator=_positive)

    def describe(self) -> dict:
        return {
            "stage": self.stage,
            "region": self.region,
            "account": self.account,
            "role_arn": self.role_arn,
            "image_directory": self.image_directory,
            "use_default_vpc": self.use_default_vpc,
            "database": self.database.describe(),
        }


def validate_stage(stage: str) -> str:
    if not isinstance(stage, str) or not _STAGE_PATTERN.match(stage):
        raise ConfigurationError(f"stage must be a single URL path segment, got {stage!r}")
    return stage


def resolve_stage(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return the deployment stage from ``API_STAGE``, defaulting to ``prod``."""
    environ = os.environ if environ is None else environ
    return validate_stage(environ.get("API_STAGE") or constants.DEFAULT_STAGE)


def load_credentials_file(path: str = constants.CREDENTIALS_FILE) -> dict:
    """Read ``KEY=VALUE`` pairs from the credentials file, if it exists."""
    if not os.path.isfile(path):
        return {}
    return {key: value for key, value in dotenv_values(path).items() if value}


class _Resolver:
    def __init__(
        self,
        lookup_context: ContextLookup,
        environ: Mapping[str, str],
        credentials: Mapping[str, str],
    ) -> None:
        self.lookup_context = lookup_context
        self.environ = environ
        self.credentials = credentials

    def get(self, context_key: str, *env_keys: str, credentials_key: Optional[str] = None, default=None):
        value = self.lookup_context(context_key)
        if value not in (None, ""):
            return value
        for env_key in env_keys:
            if self.environ.get(env_key):
                return self.environ[env_key]
        if credentials_key and self.credentials.get(credentials_key):
            return self.credentials[credentials_key]
        return default

    def get_int(self, context_key: str, env_key: str, default: int) -> int:
        value = self.get(context_key, env_key, default=default)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{context_key} must be an integer, got {value!r}") from None

    def get_bool(self, context_key: str, env_key: str) -> bool:
        value = self.get(context_key, env_key, default=False)
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUTHY


def resolve_config(
    lookup_context: Optional[ContextLookup] = None,
    environ: Optional[Mapping[str, str]] = None,
    credentials_path: str = constants.CREDENTIALS_FILE,
) -> DeploymentConfig:
    """Resolve the deployment configuration.

    ``lookup_context`` is usually ``app.node.try_get_context``. Raises
    :class:`ConfigurationError` for a missing role ARN or malformed values.
    """
    environ = os.environ if environ is None else environ
    resolver = _Resolver(
        lookup_context or (lambda key: None),
        environ,
        load_credentials_file(credentials_path),
    )

    database = DatabaseConfig(
        instance_id=resolver.get("db_instance_id", "DB_INSTANCE_ID", default=constants.DB_INSTANCE_ID),
        db_name=resolver.get("db_name", "DB_NAME", default=constants.DB_NAME),
        db_user=resolver.get("db_user", "DB_USER", default=constants.DB_USER),
        db_password=resolver.get("db_password", "DB_PASSWORD"),
        instance_class=resolver.get("db_instance_class", "DB_INSTANCE_CLASS", default=constants.DB_INSTANCE_CLASS),
        allocated_storage=resolver.get_int("db_allocated_storage", "DB_ALLOCATED_STORAGE", constants.DB_ALLOCATED_STORAGE),
        engine_version=resolver.get("db_engine_version", "DB_ENGINE_VERSION", default=constants.DB_ENGINE_VERSION),
        port=resolver.get_int("db_port", "DB_PORT", constants.DB_PORT),
    )

    return DeploymentConfig(
        role_arn=resolver.get("role_arn", "IAM_ROLE_ARN", credentials_key="IAM_role_arn", default=""),
        stage=resolver.get("stage", "API_STAGE", default=constants.DEFAULT_STAGE),
        region=resolver.get(
            "region", "AWS_REGION", "CDK_DEFAULT_REGION",
            credentials_key="region", default=constants.DEFAULT_REGION,
        ),
        account=resolver.get("account", "CDK_DEFAULT_ACCOUNT"),
        database=database,
        image_directory=resolver.get("image_directory", "IMAGE_DIRECTORY", default=constants.IMAGE_DIRECTORY),
        use_default_vpc=resolver.get_bool("use_default_vpc", "USE_DEFAULT_VPC"),
    )
