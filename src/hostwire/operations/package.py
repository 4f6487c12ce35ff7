"""Package management through the host's package provider.

The agent picks its default provider (apt, dnf, homebrew, ...) unless the
caller names one. Installing an installed package, or uninstalling an
absent one, succeeds with ``changed=False``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional, Union

import structlog

from hostwire.core.exceptions import PackageNotFound, ProtocolError, ProviderUnavailable
from hostwire.core.models import PackageResult
from hostwire.operations.base import ErrorTable, call, parse_action, require_text
from hostwire.session.session import Session
from hostwire.wire.messages import Operation


log = structlog.get_logger()


class PackageAction(StrEnum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    QUERY = "query"


class Provider(StrEnum):
    """Package providers an agent may support."""

    APT = "apt"
    DNF = "dnf"
    HOMEBREW = "homebrew"
    MACPORTS = "macports"
    NIX = "nix"
    PKG = "pkg"
    PORTS = "ports"
    YUM = "yum"


PACKAGE_ERRORS: ErrorTable = {
    "package_not_found": PackageNotFound,
    "provider_unavailable": ProviderUnavailable,
}

_OPERATIONS = {
    PackageAction.INSTALL: Operation.PACKAGE_INSTALL,
    PackageAction.UNINSTALL: Operation.PACKAGE_UNINSTALL,
    PackageAction.QUERY: Operation.PACKAGE_QUERY,
}


async def package_op(
    session: Session,
    action: Union[PackageAction, str],
    name: str,
    *,
    provider: Optional[Union[Provider, str]] = None,
    timeout: Optional[float] = None,
) -> PackageResult:
    """Install, uninstall or query a package.

    Raises:
        InvalidRequestError: Unknown action or provider, or empty name.
        PackageNotFound: The provider knows no such package.
        ProviderUnavailable: The requested provider is not active on the host.
    """
    package_action = parse_action("package", PackageAction, action)
    operation = _OPERATIONS[package_action]
    name = require_text(operation, "name", name)

    args = {"name": name}
    if provider is not None:
        args["provider"] = parse_action(operation, Provider, provider).value

    value = await call(session, operation, args, PACKAGE_ERRORS, timeout=timeout)
    result = PackageResult.from_wire(name, value)
    if package_action != PackageAction.QUERY:
        log.info(
            "package_action_completed",
            host=session.host,
            action=str(package_action),
            package=name,
            changed=result.changed,
            version=result.installed_version,
        )
    return result


async def default_provider(session: Session, *, timeout: Optional[float] = None) -> Provider:
    """Return the provider the agent uses when none is named."""
    value = await call(session, Operation.PACKAGE_DEFAULT_PROVIDER, {}, PACKAGE_ERRORS, timeout=timeout)
    try:
        return Provider(value.get("provider"))
    except ValueError:
        raise ProtocolError(f"agent reported unknown provider {value.get('provider')!r}") from None
