"""
Hosts file helper

Adding or removing a hosts entry is delegated to a privileged helper binary
run through an elevation command:

    <elevate...> <helper> <add|remove> <ip> <domain>

A declined privilege prompt is reported as cancelled, separately from other
failures.
"""

import asyncio
import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from devharbor.core.errors import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)

# Output fragments elevation tools print when the user declines
DENIAL_MARKERS = (
    "user did not grant permission",
    "not authorized",
    "request dismissed",
    "authentication failed",
    "incorrect password",
)

# pkexec exit codes for a dismissed or failed authentication dialog
DENIAL_EXIT_CODES = (126, 127)


@dataclass
class HostsOperationResult:
    success: bool
    error: Optional[str] = None
    cancelled: bool = False
    error_code: Optional[str] = None


def validate_host_entry(ip: str, domain: str) -> None:
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        raise ValidationError(f"Invalid IP address: {ip!r}", data={"ip": ip})
    if not isinstance(domain, str) or not DOMAIN_PATTERN.match(domain):
        raise ValidationError(f"Invalid domain: {domain!r}", data={"domain": domain})


class HostsHelper:
    """Runs the elevated hosts helper as a subprocess"""

    def __init__(
        self,
        helper_path: str = "hostie",
        elevate: Optional[Sequence[str]] = ("pkexec",),
        timeout: float = 120.0,
    ):
        self.helper_path = helper_path
        self.elevate = list(elevate or [])
        self.timeout = timeout

    def build_command(self, operation: str, ip: str, domain: str) -> List[str]:
        return [*self.elevate, self.helper_path, operation, ip, domain]

    async def add_entry(self, ip: str, domain: str) -> HostsOperationResult:
        return await self._run("add", ip, domain)

    async def remove_entry(self, ip: str, domain: str) -> HostsOperationResult:
        return await self._run("remove", ip, domain)

    async def _run(self, operation: str, ip: str, domain: str) -> HostsOperationResult:
        validate_host_entry(ip, domain)
        command = self.build_command(operation, ip, domain)
        logger.info(f"{operation} {domain} -> {ip}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Could not launch hosts helper: {e}")
            return HostsOperationResult(
                success=False,
                error=f"Could not launch hosts helper: {e}",
                error_code=ErrorCode.INTERNAL_ERROR.value,
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Hosts helper timed out after {self.timeout}s")
            return HostsOperationResult(
                success=False,
                error=f"Hosts helper timed out after {self.timeout}s",
                error_code=ErrorCode.INTERNAL_ERROR.value,
            )

        output = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode == 0 and not output:
            logger.info(f"{operation} success: {ip} {domain}")
            return HostsOperationResult(success=True)

        if self._is_denial(process.returncode, output):
            logger.warning("Privilege prompt declined")
            return HostsOperationResult(
                success=False,
                error="Administrator privileges required",
                cancelled=True,
                error_code=ErrorCode.PERMISSION_DENIED.value,
            )

        error = output or stdout.decode("utf-8", errors="replace").strip()
        error = error or f"Hosts helper exited with code {process.returncode}"
        logger.error(f"{operation} failed: {error}")
        return HostsOperationResult(
            success=False,
            error=error,
            error_code=ErrorCode.INTERNAL_ERROR.value,
        )

    def _is_denial(self, returncode: Optional[int], output: str) -> bool:
        lowered = output.lower()
        if any(marker in lowered for marker in DENIAL_MARKERS):
            return True
        return bool(self.elevate) and self.elevate[0].endswith("pkexec") and returncode in DENIAL_EXIT_CODES
