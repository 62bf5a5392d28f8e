"""Discord REST gateway used to post upload announcements."""

import httpx

from uploadwatch.common.errors import PermanentDispatchFailure, TransientError

# Missing access, unknown channel: the destination will not accept messages.
PERMANENT_STATUSES = {400, 401, 403, 404}


class DiscordGateway:
    """Sends plain-text messages to channel ids through the bot token."""

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bot {bot_token}"},
        )

    async def send_message(self, destination: str, text: str) -> None:
        try:
            resp = await self.http.post(
                f"{self.api_url}/channels/{destination}/messages",
                json={"content": text, "flags": 0},
            )
        except httpx.HTTPError as exc:
            raise TransientError(f"discord transport error: {exc}") from exc
        if resp.status_code in PERMANENT_STATUSES:
            raise PermanentDispatchFailure(f"discord rejected channel {destination}: {resp.status_code}")
        if resp.status_code >= 400:
            raise TransientError(f"discord returned {resp.status_code} for channel {destination}")

    async def aclose(self) -> None:
        await self.http.aclose()
