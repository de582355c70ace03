from unittest.mock import AsyncMock, MagicMock

import pytest

from cogs.stream_alerts.cog import JOIN_HINT, NOT_READY_TEXT, StreamAlertsCog
from cogs.stream_alerts.platform import AddResult


def _interaction(guild_id=1):
    interaction = MagicMock()
    interaction.guild_id = guild_id
    interaction.response.send_message = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


@pytest.fixture
def cog():
    manager = MagicMock()
    manager.platform_names = ["Twitch"]
    manager.add_alert = AsyncMock(return_value=AddResult.ADDED)
    manager.remove_alert = AsyncMock(return_value=["Twitch"])
    manager.list_alerts = AsyncMock(return_value={})
    router = MagicMock()
    router.channel_for.return_value = 555
    router.set_channel = AsyncMock()
    instance = StreamAlertsCog(MagicMock(), manager, router)
    instance.ready = True
    return instance


async def test_commands_reply_not_ready_before_publish(cog):
    cog.ready = False
    interaction = _interaction()

    await cog.alert.callback(cog, interaction, "Twitch", "streamerX")

    interaction.response.send_message.assert_awaited_once_with(NOT_READY_TEXT, ephemeral=True)
    cog.manager.add_alert.assert_not_awaited()


async def test_publish_syncs_and_marks_ready(cog):
    cog.ready = False
    cog.bot.tree.sync = AsyncMock(return_value=[1, 2, 3, 4])

    await cog.publish()

    assert cog.ready
    cog.bot.tree.sync.assert_awaited_once()


@pytest.mark.parametrize(
    "result, text",
    [
        (AddResult.ADDED, "Added alerts for streamerX on Twitch"),
        (AddResult.EXISTS, "Alerts for streamerX on Twitch already exists"),
        (AddResult.FAILED, "Failed to add alerts for streamerX on Twitch"),
    ],
)
async def test_alert_replies(cog, result, text):
    cog.manager.add_alert.return_value = result
    interaction = _interaction()

    await cog.alert.callback(cog, interaction, "Twitch", "streamerX")

    cog.manager.add_alert.assert_awaited_once_with("Twitch", "streamerX", "1")
    interaction.followup.send.assert_awaited_once_with(text, ephemeral=True)


async def test_alert_hints_join_without_channel(cog):
    cog.router.channel_for.return_value = None
    interaction = _interaction()

    await cog.alert.callback(cog, interaction, "Twitch", "streamerX")

    content = interaction.followup.send.await_args.args[0]
    assert content.endswith(JOIN_HINT)


async def test_remove_replies(cog):
    interaction = _interaction()
    await cog.remove.callback(cog, interaction, "all", "streamerX")
    interaction.followup.send.assert_awaited_once_with("streamerX has been removed from Twitch", ephemeral=True)

    cog.manager.remove_alert.return_value = []
    interaction = _interaction()
    await cog.remove.callback(cog, interaction, "Twitch", "streamerX")
    interaction.followup.send.assert_awaited_once_with("Failed to remove alerts for streamerX on Twitch", ephemeral=True)


async def test_debug_lists_alerts(cog):
    interaction = _interaction()
    await cog.debug.callback(cog, interaction)
    interaction.followup.send.assert_awaited_once_with("There are no alerts currently", ephemeral=True)

    cog.manager.list_alerts.return_value = {"streamerX": ["Twitch"]}
    interaction = _interaction()
    await cog.debug.callback(cog, interaction)
    interaction.followup.send.assert_awaited_once_with(
        "The following users are in the following platform alerts:\nstreamerX: Twitch", ephemeral=True
    )


async def test_join_sets_channel(cog):
    interaction = _interaction(guild_id=42)
    channel = MagicMock()
    channel.id = 777
    channel.name = "alerts"

    await cog.join.callback(cog, interaction, channel)

    cog.router.set_channel.assert_awaited_once_with("42", 777)
    interaction.response.send_message.assert_awaited_once_with(
        "Alerts will now be sent in the alerts channel", ephemeral=True
    )


def test_platform_choices_include_all_for_remove(cog):
    assert [c.value for c in cog._platform_choices("")] == ["Twitch"]
    assert [c.value for c in cog._platform_choices("", with_all=True)] == ["Twitch", "all"]
    assert [c.value for c in cog._platform_choices("tw")] == ["Twitch"]
    assert cog._platform_choices("kick") == []
