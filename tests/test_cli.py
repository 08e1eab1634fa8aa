"""Tests for the command-line interface."""

import json

from click.testing import CliRunner

from peershare.cli import cli, format_size


def test_config_shows_effective_values(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'port': 7100}))

    result = CliRunner().invoke(cli, ['--config', str(path), 'config'])

    assert result.exit_code == 0
    assert 'port' in result.output
    assert '7100' in result.output


def test_config_init_writes_example(tmp_path):
    path = tmp_path / 'peershare.json'

    result = CliRunner().invoke(cli, ['config', '--init', str(path)])

    assert result.exit_code == 0
    assert json.loads(path.read_text())['port'] == 5000


def test_send_requires_existing_file(tmp_path):
    result = CliRunner().invoke(cli, ['send', str(tmp_path / 'missing.bin')])
    assert result.exit_code != 0


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
