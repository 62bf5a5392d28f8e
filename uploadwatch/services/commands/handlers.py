"""Turn chat commands into human-readable replies.

The chat framework owns parsing and delivery of replies; these handlers only
map `(destination, args)` to a reply string and never raise for user errors.
"""

from datetime import timedelta

from uploadwatch.common.errors import QuotaExhausted, SourceNotResolvable, StorageUnavailable

HELP_TEXT = (
    "Currently available commands: `/subscribe <channel_url>`, "
    "`/unsubscribe <channel_url>`, "
    "`/filters <channel_url> [shorts=on|off] [live=on|off] [vod=on|off]`, "
    "`/howmany`, `/help`."
)
FILTERS_USAGE = "Usage: /filters <channel_url> [shorts=on|off] [live=on|off] [vod=on|off]"
FILTER_NAMES = ("shorts", "live", "vod")
SWITCHES = {"on": True, "off": False}


class CommandHandlers:
    """Reply builders for subscribe, unsubscribe, filters, howmany and help."""

    def __init__(self, manager, store, poll_interval: float) -> None:
        self.manager = manager
        self.store = store
        self.poll_interval = poll_interval

    async def subscribe(self, destination: str, args: list[str]) -> str:
        if not args:
            return "Usage: /subscribe <channel_url>"
        try:
            result = await self.manager.subscribe(destination, args[0])
        except SourceNotResolvable as exc:
            return f"Could not subscribe: {exc.reason}.\nReceived: {exc.url}"
        except QuotaExhausted:
            return "The daily lookup budget is used up; please try again tomorrow."
        except StorageUnavailable:
            return "Failed to save the subscription, please try again shortly."
        if not result.created:
            return f"Channel {destination} is already subscribed to uploads playlist {result.source_id}."
        return f"Successfully subscribed channel {destination} to uploads playlist {result.source_id}."

    async def unsubscribe(self, destination: str, args: list[str]) -> str:
        if not args:
            return "Usage: /unsubscribe <channel_url>"
        try:
            source_id, changed = await self.manager.unsubscribe(destination, args[0])
        except SourceNotResolvable as exc:
            return f"Could not unsubscribe: {exc.reason}.\nReceived: {exc.url}"
        except QuotaExhausted:
            return "The daily lookup budget is used up; please try again tomorrow."
        except StorageUnavailable:
            return "Failed to remove the subscription, please try again shortly."
        if not changed:
            return f"Channel {destination} was not subscribed to uploads playlist {source_id}."
        return f"Successfully unsubscribed channel {destination} from uploads playlist {source_id}."

    async def filters(self, destination: str, args: list[str]) -> str:
        if not args:
            return FILTERS_USAGE
        changes: dict[str, bool] = {}
        for arg in args[1:]:
            name, _, value = arg.lower().partition("=")
            if name not in FILTER_NAMES or value not in SWITCHES:
                return FILTERS_USAGE
            changes[name] = SWITCHES[value]
        try:
            source_id, subscription = await self.manager.update_filters(destination, args[0], **changes)
        except SourceNotResolvable as exc:
            return f"Could not update filters: {exc.reason}.\nReceived: {exc.url}"
        except QuotaExhausted:
            return "The daily lookup budget is used up; please try again tomorrow."
        except StorageUnavailable:
            return "Failed to update the filters, please try again shortly."
        if subscription is None:
            return f"Channel {destination} is not subscribed to uploads playlist {source_id}."
        state = ", ".join(
            f"{name}={'on' if allowed else 'off'}"
            for name, allowed in (
                ("shorts", subscription.shorts_allowed),
                ("live", subscription.live_allowed),
                ("vod", subscription.vod_allowed),
            )
        )
        return f"Filters for uploads playlist {source_id} in channel {destination}: {state}."

    async def howmany(self, destination: str, args: list[str]) -> str:
        del destination, args
        try:
            count = self.store.count_sources()
        except StorageUnavailable:
            return "Failed to get number of subscriptions, please try again shortly."
        return f"Checking {count} playlists every {timedelta(seconds=self.poll_interval)}."

    async def help(self, destination: str, args: list[str]) -> str:
        del destination, args
        return HELP_TEXT

    async def dispatch(self, name: str, destination: str, args: list[str]) -> str:
        handler = {
            "subscribe": self.subscribe,
            "unsubscribe": self.unsubscribe,
            "filters": self.filters,
            "howmany": self.howmany,
            "help": self.help,
        }.get(name)
        if handler is None:
            return "This command hasn't been implemented. Try /help"
        return await handler(destination, args)
