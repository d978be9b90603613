"""Address allocation for new devices.

Addresses are handed out in ascending order from a server's
[ip_range_start, ip_range_end] range: the highest active address plus one,
or the range start when the server has no active devices. Arithmetic is done
on whole integer addresses so ranges may span several /24 blocks.
"""

from __future__ import annotations

import ipaddress
import logging
import uuid

from sqlalchemy.orm import Session

from boldvpn.models.vpn import UserDevice, VpnServer
from boldvpn.services.provisioning_errors import (
    AddressOutOfRange,
    RangeExhausted,
    RangeNotConfigured,
    ServerUnavailable,
)

logger = logging.getLogger(__name__)


def parse_range(
    start: str | None, end: str | None
) -> tuple[ipaddress.IPv4Address | ipaddress.IPv6Address, ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Parse a configured range.

    Raises:
        RangeNotConfigured: If either bound is unset or not an address
    """
    if not start or not end:
        raise RangeNotConfigured(range_start=start, range_end=end)
    try:
        start_ip = ipaddress.ip_address(start.strip())
        end_ip = ipaddress.ip_address(end.strip())
    except ValueError as e:
        raise RangeNotConfigured(
            f"Server address range is invalid: {e}", range_start=start, range_end=end
        ) from e
    if start_ip.version != end_ip.version:
        raise RangeNotConfigured(
            "Server address range mixes IPv4 and IPv6", range_start=start, range_end=end
        )
    return start_ip, end_ip


def _highest_address(addresses: list[str | None], version: int):
    highest = None
    for value in addresses:
        if not value:
            continue
        try:
            ip = ipaddress.ip_interface(value.strip()).ip
        except ValueError:
            logger.warning("Ignoring unparsable assigned address %r", value)
            continue
        if ip.version != version:
            continue
        if highest is None or ip > highest:
            highest = ip
    return highest


def compute_next_address(
    range_start: str | None, range_end: str | None, assigned: list[str | None]
) -> str:
    """Pick the next address after the highest of ``assigned``.

    Raises:
        RangeNotConfigured: If the range is unset or unparsable
        AddressOutOfRange: If the range is inverted or the candidate falls below start
        RangeExhausted: If the candidate would pass the range end
    """
    start_ip, end_ip = parse_range(range_start, range_end)
    if int(start_ip) > int(end_ip):
        raise AddressOutOfRange(
            "Server address range is inverted",
            range_start=str(start_ip),
            range_end=str(end_ip),
        )

    highest = _highest_address(assigned, start_ip.version)
    if highest is None:
        candidate = start_ip
    else:
        try:
            candidate = type(start_ip)(int(highest) + 1)
        except ipaddress.AddressValueError as e:
            raise RangeExhausted(range_end=str(end_ip)) from e

    if int(candidate) > int(end_ip):
        raise RangeExhausted(
            f"Address range {start_ip}-{end_ip} is exhausted",
            range_start=str(start_ip),
            range_end=str(end_ip),
        )
    if int(candidate) < int(start_ip):
        raise AddressOutOfRange(
            candidate=str(candidate), range_start=str(start_ip), range_end=str(end_ip)
        )
    return str(candidate)


def next_address(db: Session, server_id: uuid.UUID) -> str:
    """Allocate the next address on a server inside the caller's transaction.

    Locks the server row and its active device rows (SELECT ... FOR UPDATE);
    the locks are held until the caller commits or rolls back, so concurrent
    allocations on the same server are serialized.
    """
    server = (
        db.query(VpnServer)
        .filter(VpnServer.id == server_id)
        .with_for_update()
        .first()
    )
    if not server:
        raise ServerUnavailable(server_id=str(server_id))

    rows = (
        db.query(UserDevice)
        .filter(UserDevice.server_id == server_id)
        .filter(UserDevice.is_active.is_(True))
        .with_for_update()
        .all()
    )
    address = compute_next_address(
        server.ip_range_start, server.ip_range_end, [row.assigned_ip for row in rows]
    )
    logger.debug("Allocated %s on server %s", address, server.name)
    return address
