import os
from unittest.mock import patch

import pytest
from rtpbridge_controller.persistence import ConfigStore, sanitize_value


def test_read_all_strips_quotes_and_comments(store):
    cfg = store.read_all()
    assert cfg["SPOTIFY_NAME"] == "Gym Audio"
    assert cfg["OPUS_BITRATE"] == "128000"
    assert cfg["STREAM_VOLUME"] == "1.0"
    assert cfg["LAST_SOURCE"] == "off"


def test_get_default(store):
    assert store.get("NOT_THERE", "fallback") == "fallback"
    assert store.get("LINEIN_CAPTURE") == "auto"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigStore(tmp_path / "nope.env").read_all()


def test_update_rewrites_existing_key(store, config_file):
    written = store.update({"LAST_SOURCE": "linein"})

    assert written == {"LAST_SOURCE"}
    assert 'LAST_SOURCE="linein"\n' in config_file.read_text()
    assert store.get("LAST_SOURCE") == "linein"


def test_update_preserves_comments_and_other_lines(store, config_file):
    before = config_file.read_text().splitlines()
    store.update({"STREAM_VOLUME": "0.5"})
    after = config_file.read_text().splitlines()

    assert len(before) == len(after)
    assert "# Fixed multicast destination" in after
    assert 'MCAST_IP="239.10.10.10"' in after
    assert 'STREAM_VOLUME="0.5"' in after


def test_update_does_not_create_unknown_keys(store, config_file):
    written = store.update({"SOMETHING_NEW": "x", "SPOTIFY_NAME": "Hall"})

    assert written == {"SPOTIFY_NAME"}
    assert "SOMETHING_NEW" not in config_file.read_text()


def test_update_sanitizes_value(store):
    store.update({"SPOTIFY_NAME": 'The "Big"\r\n Room'})
    assert store.get("SPOTIFY_NAME") == "The 'Big' Room"


def test_sanitize_value():
    assert sanitize_value('a"b') == "a'b"
    assert sanitize_value("line1\nline2\r") == "line1line2"
    assert sanitize_value(1.5) == "1.5"


def test_failed_write_leaves_file_intact(store, config_file):
    original = config_file.read_text()

    with patch("rtpbridge_controller.persistence.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            store.update({"LAST_SOURCE": "spotify"})

    assert config_file.read_text() == original
    # No temp files left behind
    assert os.listdir(config_file.parent) == ["config.env"]
