from datetime import datetime, timezone

from modules.presence.render import (
    FIELD_LIMIT,
    build_presence_embed,
    bullets_for,
    entered_alert,
    left_alert,
)


def test_bullets_for_empty_roster():
    assert bullets_for([]) == ["_None_"]


def test_bullets_for_respects_field_limit():
    names = [f"player_{i:08d}" for i in range(200)]

    chunks = bullets_for(names)

    assert len(chunks) > 1
    assert all(len(chunk) <= FIELD_LIMIT for chunk in chunks)
    rejoined = "\n".join(chunks).split("\n")
    assert rejoined == [f"• {name}" for name in names]


def test_alert_texts():
    assert entered_alert("Bob", "shard") == "🔴 **Bob** has **entered** the shard, keep an eye out."
    assert left_alert("Bob", "Raiding Outpost shard") == (
        "🟢 **Bob** has **left** the Raiding Outpost shard, what a good boy."
    )


def test_presence_embed_layout():
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    embed = build_presence_embed(
        title_prefix="Shard Player Tracker",
        footer_text="Factions Bot Shard Player Tracker",
        names=["Alpha"],
        world=None,
        now=now,
    )

    assert embed.title == "Shard Player Tracker - 1 Player in Unknown"
    assert embed.footer.text == f"Factions Bot Shard Player Tracker • Last update: <t:{int(now.timestamp())}:t>"
    assert [field.name for field in embed.fields] == ["Players (1)"]
    assert embed.fields[0].value == "• Alpha"


def test_presence_embed_continuation_fields():
    names = [f"player_{i:08d}" for i in range(120)]

    embed = build_presence_embed(
        title_prefix="Outpost Player Tracker",
        footer_text="f",
        names=names,
        world="Raiding Outpost",
    )

    assert embed.title == "Outpost Player Tracker - 120 Players in Raiding Outpost"
    assert embed.fields[0].name == "Players (120)"
    assert all(field.name == "Players (cont.)" for field in embed.fields[1:])
    assert len(embed.fields) <= 25
