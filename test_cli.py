from unittest.mock import patch

from typer.testing import CliRunner

from peerexchange.cli import app
from peerexchange.links import parse_fragment
from peerexchange.nicknames import room_nickname
from peerexchange.secret import channel_id_for


runner = CliRunner()
KEY = "ab" * 32


def test_keygen_prints_key_and_link():
    result = runner.invoke(app, ["keygen", "--base-url", "https://example.org/"])
    assert result.exit_code == 0
    key, link = result.output.strip().splitlines()
    assert len(key) == 64
    assert parse_fragment(link).value == key


def test_channel_for_key():
    result = runner.invoke(app, ["channel", KEY.upper()])
    assert result.exit_code == 0
    assert result.output.strip() == channel_id_for(KEY)


def test_channel_rejects_bad_key():
    result = runner.invoke(app, ["channel", "1234"])
    assert result.exit_code == 1
    assert "Invalid connect key" in result.output


def test_room_shows_name_channel_and_link():
    room_id = "cd" * 16
    result = runner.invoke(app, ["room", "--room-id", room_id, "--base-url", "https://example.org/"])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert lines[0] == f"Room: {room_nickname(room_id, with_hash=True)}"
    assert lines[1] == f"Channel: {channel_id_for(room_id)}"
    assert lines[2] == f"https://example.org/#room={room_id}"


def test_connect_rejects_bad_key_before_network():
    with patch("peerexchange.cli.HttpRelayTransport") as transport:
        result = runner.invoke(app, ["connect", "--key", "nope"])
    assert result.exit_code == 1
    assert "Invalid connect key" in result.output
    transport.assert_not_called()
