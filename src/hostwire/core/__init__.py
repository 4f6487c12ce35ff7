"""Core module for Hostwire.

Exports the core components: exceptions, data models, and configuration.
"""

from hostwire.core.exceptions import (
    HostwireError,
    ConfigurationError,
    DecryptionError,
    InvalidStateTransition,
    ResourceLimitError,
    InvalidRequestError,
    HostNotFoundError,
    # Connection & protocol
    NetworkError,
    AuthError,
    ProtocolError,
    UnknownMessage,
    SessionClosed,
    RequestTimeout,
    # Agent-reported
    AgentError,
    OperationError,
    FileNotFound,
    FilePermissionDenied,
    FileAlreadyExists,
    PackageNotFound,
    ProviderUnavailable,
    ServiceNotFound,
    ServiceStartFailed,
    ServiceStopFailed,
    TemplateRenderError,
    PayloadIntegrityError,
)
from hostwire.core.models import (
    CommandResult,
    FileContents,
    FileOwner,
    FileStat,
    PackageResult,
    RunnableState,
    ServiceResult,
)
from hostwire.core.config import (
    get_settings,
    reset_settings,
    Settings,
    HostConfig,
    TransportConfig,
    SecurityConfig,
    LoggingConfig,
    RegistryConfig,
)
from hostwire.core.keystore import (
    ChannelCipher,
    derive_key,
    generate_salt,
)
from hostwire.core.logging_setup import configure_logging

__all__ = [
    # Exceptions
    "HostwireError",
    "ConfigurationError",
    "DecryptionError",
    "InvalidStateTransition",
    "ResourceLimitError",
    "InvalidRequestError",
    "HostNotFoundError",
    "NetworkError",
    "AuthError",
    "ProtocolError",
    "UnknownMessage",
    "SessionClosed",
    "RequestTimeout",
    "AgentError",
    "OperationError",
    "FileNotFound",
    "FilePermissionDenied",
    "FileAlreadyExists",
    "PackageNotFound",
    "ProviderUnavailable",
    "ServiceNotFound",
    "ServiceStartFailed",
    "ServiceStopFailed",
    "TemplateRenderError",
    "PayloadIntegrityError",
    # Data Models
    "CommandResult",
    "FileContents",
    "FileOwner",
    "FileStat",
    "PackageResult",
    "RunnableState",
    "ServiceResult",
    # Configuration
    "get_settings",
    "reset_settings",
    "Settings",
    "HostConfig",
    "TransportConfig",
    "SecurityConfig",
    "LoggingConfig",
    "RegistryConfig",
    "configure_logging",
    # Keystore (PBKDF2 + AES-256-GCM)
    "ChannelCipher",
    "derive_key",
    "generate_salt",
]
