"""Tests for properties file loading and the ArchiveConfig built from it."""

import re
from pathlib import Path

import pytest

import logmgmt
from conftest import make_logger
from logmgmt import ArchiveConfig, ConfigurationError, load_properties, parse_properties


def test_parse_properties_separators_and_comments() -> None:
    text = "\n".join(
        [
            "# comment",
            "! also a comment",
            "",
            "input.path=/var/log/app",
            "input.pattern : *.log",
            "application.name   JBoss",
            "   output.path = /mnt/archive  ",
            "empty.value=",
        ]
    )
    properties = parse_properties(text)
    assert properties["input.path"] == "/var/log/app"
    assert properties["input.pattern"] == "*.log"
    assert properties["application.name"] == "JBoss"
    assert properties["output.path"] == "/mnt/archive  "
    assert properties["empty.value"] == ""
    assert len(properties) == 5


def test_parse_properties_continuation_and_escapes() -> None:
    text = "output.path=\\\\\\\\server\\\\share\\\\\n" "input.pattern=server\\\n    .log*\n" "key\\ with\\ spaces=v\n"
    properties = parse_properties(text)
    assert properties["output.path"] == "\\\\server\\share\\"
    assert properties["input.pattern"] == "server.log*"
    assert properties["key with spaces"] == "v"


def test_load_properties_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_properties(str(tmp_path / "missing.properties"))


def test_load_properties_reads_file(tmp_path: Path) -> None:
    file = tmp_path / "app.properties"
    file.write_text("input.path=/logs\noutput.delay=3\n")
    assert load_properties(str(file)) == {"input.path": "/logs", "output.delay": "3"}


def test_archive_config_from_properties() -> None:
    logger, _ = make_logger()
    properties = {"application.name": " JBoss ", "output.path": "/mnt/archive", "output.delay": "7", "output.compress": "TRUE", "input.file.delete": "true"}
    config = ArchiveConfig.from_properties(properties, "  Web ", "node1", logger)
    assert config == ArchiveConfig(base_path="/mnt/archive", server_group="web", application="jboss", custom_prefix="node1", compress=True, output_delay_days=7)


def test_archive_config_defaults(capsys: pytest.CaptureFixture[str]) -> None:
    logger, _ = make_logger()
    config = ArchiveConfig.from_properties({"output.path": "/mnt/archive", "output.compress": "yes"}, None, "", logger)
    assert config.server_group == "gateway"
    assert config.application == "default"
    assert config.custom_prefix is None
    assert config.compress is False  # only 'true' enables compression
    assert config.output_delay_days == 5
    assert "application name is empty" in capsys.readouterr().err


@pytest.mark.parametrize(
    "properties, error",
    [
        ({}, "output.path"),
        ({"output.path": "/out", "output.delay": "soon"}, "must be an integer"),
        ({"output.path": "/out", "output.delay": "-2"}, "must be >= 0"),
    ],
)
def test_archive_config_from_invalid_properties(properties: dict[str, str], error: str) -> None:
    logger, _ = make_logger()
    with pytest.raises(ConfigurationError, match=error):
        ArchiveConfig.from_properties(properties, None, None, logger)


def test_unparsable_property_line(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logmgmt, "_PROPERTY_RE", re.compile(r"(\w+)=(\w*)"))
    assert parse_properties("key=value") == {"key": "value"}
    with pytest.raises(ConfigurationError, match="Unable to parse the property line 'key=two words'"):
        parse_properties("key=two words")
