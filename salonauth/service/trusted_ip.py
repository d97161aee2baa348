"""Per-user trusted IP allow-lists, managed by admins."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Tuple

from salonauth.logging import get_logger
from salonauth.result import Err, Ok, Result
from salonauth.service.credentials import is_valid_ip_address
from salonauth.service.deps import BaseDeps, TrustedIpDeps
from salonauth.service.failures import (
    AddTrustedIpError,
    AdminUserError,
    InvalidIpAddress,
    IpAlreadyTrusted,
    IpNotFound,
    IpNotTrusted,
    IpRestrictionError,
    MaxTrustedIpsReached,
    RemoveTrustedIpError,
)
from salonauth.service.lookups import load_admin_and_user, load_user, save_user

logger = get_logger(__name__)


@dataclass(frozen=True)
class TrustedIpRequest:
    user_id: str
    ip_address: str
    admin_user_id: str


@dataclass(frozen=True)
class TrustedIpList:
    user_id: str
    trusted_ip_addresses: Tuple[str, ...]
    max_trusted_ips: int


async def add_trusted_ip(
    request: TrustedIpRequest, deps: TrustedIpDeps
) -> Result[TrustedIpList, AddTrustedIpError]:
    ip = request.ip_address.strip()
    if not is_valid_ip_address(ip):
        return Err(InvalidIpAddress(request.ip_address))

    match load_admin_and_user(deps.users, request.admin_user_id, request.user_id):
        case Err(error):
            return Err(error)
        case Ok((_admin, user)):
            pass

    if ip in user.trusted_ip_addresses:
        return Err(IpAlreadyTrusted(ip))
    limit = deps.policy.max_trusted_ips
    if len(user.trusted_ip_addresses) >= limit:
        return Err(MaxTrustedIpsReached(limit))

    updated = replace(
        user,
        trusted_ip_addresses=user.trusted_ip_addresses + (ip,),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            logger.info(
                "trusted_ip_added",
                user_id=saved.id,
                admin_user_id=request.admin_user_id,
                ip_address=ip,
            )
            return Ok(TrustedIpList(saved.id, saved.trusted_ip_addresses, limit))


async def remove_trusted_ip(
    request: TrustedIpRequest, deps: TrustedIpDeps
) -> Result[TrustedIpList, RemoveTrustedIpError]:
    ip = request.ip_address.strip()
    match load_admin_and_user(deps.users, request.admin_user_id, request.user_id):
        case Err(error):
            return Err(error)
        case Ok((_admin, user)):
            pass

    if ip not in user.trusted_ip_addresses:
        return Err(IpNotFound(ip))

    updated = replace(
        user,
        trusted_ip_addresses=tuple(a for a in user.trusted_ip_addresses if a != ip),
        updated_at=deps.now(),
    )
    match save_user(deps.users, updated):
        case Err(error):
            return Err(error)
        case Ok(saved):
            logger.info(
                "trusted_ip_removed",
                user_id=saved.id,
                admin_user_id=request.admin_user_id,
                ip_address=ip,
            )
            return Ok(TrustedIpList(saved.id, saved.trusted_ip_addresses, deps.policy.max_trusted_ips))


async def get_trusted_ips(
    user_id: str, admin_user_id: str, deps: TrustedIpDeps
) -> Result[TrustedIpList, AdminUserError]:
    match load_admin_and_user(deps.users, admin_user_id, user_id):
        case Err(error):
            return Err(error)
        case Ok((_admin, user)):
            return Ok(
                TrustedIpList(user.id, user.trusted_ip_addresses, deps.policy.max_trusted_ips)
            )


async def check_ip_restriction(
    user_id: str, ip_address: str, deps: BaseDeps
) -> Result[None, IpRestrictionError]:
    """Admit ``ip_address`` for ``user_id``.

    Passes when restriction is disabled globally or the user has no trusted
    addresses; otherwise the address must be listed verbatim.
    """
    if not deps.policy.ip_restriction_enabled:
        return Ok(None)
    match load_user(deps.users, user_id):
        case Err(error):
            return Err(error)
        case Ok(user):
            pass
    if not user.trusted_ip_addresses:
        return Ok(None)
    if ip_address not in user.trusted_ip_addresses:
        logger.warning("ip_not_trusted", user_id=user_id, ip_address=ip_address)
        return Err(IpNotTrusted(ip_address))
    return Ok(None)
