# chatsync/common/base/base_config.py
# =============================================================================
# BaseConfig - Foundation for all chatsync configuration classes
#
# - SettingsConfigDict (Pydantic v2)
# - Automatic .env file loading
# - Case-insensitive environment variables
# - Nested config support via __ delimiter
# - SecretStr for sensitive values
# - @lru_cache singleton pattern for factory functions
#
# Usage:
#     class MyConfig(BaseConfig):
#         model_config = SettingsConfigDict(
#             **BaseConfig.model_config,
#             env_prefix="MY_"
#         )
#         api_key: SecretStr
#
#     @lru_cache(maxsize=1)
#     def get_my_config() -> MyConfig:
#         return MyConfig()
# =============================================================================

from typing import Any, Dict

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class for all chatsync configs.

    Environment Variable Naming:
    - Use domain-specific prefixes (REDIS_, POSTGRES_, CHATSYNC_REALTIME_, ...)
    - Nested values use __ delimiter

    Secrets Handling:
    - Sensitive fields use SecretStr, masked in logs and repr
    - Access raw value via .get_secret_value() when needed
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def to_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
        """Convert config to dictionary.

        Args:
            mask_secrets: If True (default), SecretStr values are masked.

        Returns:
            Dictionary representation of the config.
        """
        if mask_secrets:
            return self.model_dump()
        data = {}
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            if isinstance(value, SecretStr):
                data[field_name] = value.get_secret_value()
            else:
                data[field_name] = value
        return data

    def __repr__(self) -> str:
        """Safe repr that masks secrets."""
        class_name = self.__class__.__name__
        fields = []
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            if isinstance(value, SecretStr):
                fields.append(f"{field_name}=SecretStr('**********')")
            else:
                fields.append(f"{field_name}={value!r}")
        return f"{class_name}({', '.join(fields)})"
