"""
Device Command Gateway.

Translates ENABLE/DISABLE intents into the telematics provider's GraphQL
``updateDeviceCommandsTable`` mutation. The provider answers with a free-form
message, so any response that is not an error counts as success.

Callers use ``dispatch`` after their status transition has committed: it
never raises, and failed commands land in the dead-letter queue where the
recovery sweep picks them up again.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from fleetrental.app.core.config import Settings
from fleetrental.app.core.exceptions import ExternalServiceError
from fleetrental.app.core.reliability import CircuitBreaker, CircuitOpenError
from fleetrental.app.models.dlq import DeadLetterQueue, DLQStatus
from fleetrental.app.models.vehicle import Vehicle

logger = logging.getLogger("fleetrental.device_gateway")

DEVICE_COMMAND_TASK = "device_command"

UPDATE_DEVICE_COMMAND_MUTATION = """
mutation updateDeviceCommandsTable(
  $uniqueId: String!,
  $command: String!,
  $device_password: String!,
  $use_sms: Boolean!
) {
  updateDeviceCommandsTable(
    uniqueId: $uniqueId,
    command: $command,
    device_password: $device_password,
    use_sms: $use_sms
  ) {
    message
  }
}
"""


class CommandIntent(str, enum.Enum):
    ENABLE = "ENABLE"
    DISABLE = "DISABLE"


# Provider command vocabulary
DEVICE_COMMANDS = {
    CommandIntent.ENABLE: "CHECK_SPEED_MOBILIZE",
    CommandIntent.DISABLE: "CHECK_SPEED_IMMOBILIZE",
}


@dataclass
class DeviceCommandResult:
    vehicle_number: str
    intent: CommandIntent
    success: bool
    message: Optional[str] = None
    skipped: bool = False


class DeviceCommandGateway:
    """
    Thin async client for the telematics command API.

    Args:
        api_url: GraphQL endpoint; when empty, commands are logged and skipped
        token: Bearer token
        device_password: Password the provider requires per command
        use_sms: Ask the provider to deliver the command over SMS
        timeout: Request timeout in seconds
        breaker: Circuit breaker shared by all calls of this gateway
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        api_url: Optional[str],
        token: str = "",
        device_password: str = "",
        use_sms: bool = False,
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self.token = token
        self.device_password = device_password
        self.use_sms = use_sms
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker()
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeviceCommandGateway":
        return cls(
            api_url=settings.device_api_url,
            token=settings.device_api_token,
            device_password=settings.device_password,
            use_sms=settings.device_use_sms,
            timeout=settings.device_timeout_seconds,
            breaker=CircuitBreaker(
                failure_threshold=settings.device_breaker_threshold,
                reset_timeout=settings.device_breaker_reset_seconds
            )
        )

    async def send_command(self, vehicle_number: str, intent: CommandIntent) -> DeviceCommandResult:
        """
        Send one command to the vehicle's tracking device.

        Raises:
            ExternalServiceError: On transport errors, non-2xx responses,
                GraphQL errors or an open circuit
        """
        intent = CommandIntent(intent)
        if not self.api_url:
            logger.info("Device API not configured, skipping %s for %s", intent.value, vehicle_number)
            return DeviceCommandResult(vehicle_number, intent, success=True, skipped=True)

        try:
            message = await self.breaker.call(self._post_mutation, vehicle_number, intent)
        except CircuitOpenError:
            raise ExternalServiceError(
                "device_gateway",
                "Device API circuit is open",
                details={"vehicle_number": vehicle_number, "intent": intent.value}
            )

        logger.info("Device command %s sent to %s: %s", intent.value, vehicle_number, message)
        return DeviceCommandResult(vehicle_number, intent, success=True, message=message)

    async def _post_mutation(self, vehicle_number: str, intent: CommandIntent) -> Optional[str]:
        body = {
            "query": UPDATE_DEVICE_COMMAND_MUTATION,
            "variables": {
                "uniqueId": vehicle_number,
                "command": DEVICE_COMMANDS[intent],
                "device_password": self.device_password,
                "use_sms": self.use_sms,
            },
        }
        headers = {"Authorization": f"Bearer {self.token}"}
        details = {"vehicle_number": vehicle_number, "intent": intent.value}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ExternalServiceError("device_gateway", f"Device API unreachable: {exc}", details=details)

        if response.status_code >= 400:
            raise ExternalServiceError(
                "device_gateway",
                f"Device API returned HTTP {response.status_code}",
                details=details
            )

        try:
            data = response.json()
        except ValueError:
            # Free-form body, still an accepted command
            return response.text

        if data.get("errors"):
            raise ExternalServiceError(
                "device_gateway",
                f"Device API rejected command: {data['errors']}",
                details=details
            )
        payload = (data.get("data") or {}).get("updateDeviceCommandsTable") or {}
        return payload.get("message")

    async def dispatch(
        self,
        db: AsyncSession,
        vehicle_number: str,
        intent: CommandIntent
    ) -> DeviceCommandResult:
        """
        Best-effort send. Failures are logged and dead-lettered, never raised.

        Must be called after the caller's state change has been committed:
        the dead-letter row is committed on ``db``.
        """
        intent = CommandIntent(intent)
        try:
            return await self.send_command(vehicle_number, intent)
        except ExternalServiceError as exc:
            logger.error("Device command %s for %s failed: %s", intent.value, vehicle_number, exc.message)
            db.add(DeadLetterQueue(
                task_name=DEVICE_COMMAND_TASK,
                vehicle_number=vehicle_number,
                error_message=exc.message,
                payload={"vehicle_number": vehicle_number, "intent": intent.value},
                status=DLQStatus.FAILED,
                retry_count=0
            ))
            await db.commit()
            return DeviceCommandResult(vehicle_number, intent, success=False, message=exc.message)


async def retry_dead_letter(
    db: AsyncSession,
    gateway: DeviceCommandGateway,
    item: DeadLetterQueue,
    max_retries: int,
    now: Optional[datetime] = None
) -> bool:
    """
    Re-send one dead-lettered device command and commit its new status.

    A command whose intent no longer matches the vehicle's action flag has
    been superseded (for example a stale DISABLE after a new allocation) and
    is archived without being sent. Items that keep failing are ARCHIVED
    after ``max_retries`` attempts.

    Returns:
        True if the command was delivered
    """
    payload = item.payload or {}
    action = (await db.execute(
        select(Vehicle.action).where(Vehicle.vehicle_number == payload.get("vehicle_number"))
    )).scalar_one_or_none()
    if action is None or action.value != payload.get("intent"):
        item.status = DLQStatus.ARCHIVED
        item.error_message = f"{item.error_message} (superseded)"
        await db.commit()
        return False

    # Committed before sending, so a crash mid-send leaves it for the next sweep
    item.retry_count = (item.retry_count or 0) + 1
    item.last_retry_at = now or datetime.utcnow()
    item.status = DLQStatus.RETRYING
    await db.commit()

    try:
        await gateway.send_command(payload["vehicle_number"], CommandIntent(payload["intent"]))
    except ExternalServiceError as exc:
        item.error_message = exc.message
        item.status = DLQStatus.ARCHIVED if item.retry_count >= max_retries else DLQStatus.FAILED
        logger.warning(
            "Retry %s of device command %s failed: %s",
            item.retry_count, item.id, exc.message
        )
        await db.commit()
        return False

    item.status = DLQStatus.PROCESSED
    await db.commit()
    return True


async def retry_failed_commands(
    db: AsyncSession,
    gateway: DeviceCommandGateway,
    max_retries: int,
    now: Optional[datetime] = None
) -> int:
    """
    Re-send every FAILED or RETRYING device command, oldest first.

    Returns:
        Number of commands delivered on this pass
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(DeadLetterQueue).where(
            DeadLetterQueue.task_name == DEVICE_COMMAND_TASK,
            DeadLetterQueue.status.in_([DLQStatus.FAILED, DLQStatus.RETRYING])
        ).order_by(DeadLetterQueue.id)
    )
    delivered = 0
    for item in result.scalars().all():
        if await retry_dead_letter(db, gateway, item, max_retries, now):
            delivered += 1
    return delivered
