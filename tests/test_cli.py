import json

import pytest

from cointoss_indexer import cli
from cointoss_indexer import entities as E

from conftest import CHAIN_ID, CREATOR, ONE_ETHER


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "db_path": str(tmp_path / "cointoss.db"),
                "networks": [{"chain_id": CHAIN_ID, "rpc_http": "http://localhost:8545"}],
            }
        )
    )
    return str(path)


@pytest.fixture
def events_file(tmp_path, game_events):
    path = tmp_path / "events.jsonl"
    lines = ["# exported from a node"]
    lines += [json.dumps(event.to_dict()) for event in game_events]
    path.write_text("\n".join(lines) + "\n")
    return str(path)


def _run(capsys, *argv):
    code = cli.main(list(argv))
    return code, capsys.readouterr().out


def test_load_config_defaults(tmp_path):
    cfg = cli.load_config(str(tmp_path / "absent.json"))
    assert cfg["batch_size"] == 1000
    assert cfg["networks"] == []


def test_load_config_fills_network_defaults(config_path):
    cfg = cli.load_config(config_path)
    network = cfg["networks"][0]
    assert network["rpc_ws"] is None
    assert network["start_block"] == 0
    assert cfg["health_check_threshold"] == 3


def test_load_config_requires_chain_id(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"networks": [{"rpc_http": "http://localhost:8545"}]}))
    with pytest.raises(ValueError):
        cli.load_config(str(path))


def test_iter_event_file_reports_bad_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"name": "PoolCreated"}\n')
    with pytest.raises(ValueError, match="events.jsonl:1"):
        list(cli.iter_event_file(str(path)))


def test_replay_then_query(capsys, config_path, events_file):
    code, _ = _run(capsys, "--config", config_path, "replay", "--file", events_file)
    assert code == 0

    # replaying the same file is a no-op
    code, _ = _run(capsys, "--config", config_path, "replay", "--file", events_file)
    assert code == 0

    code, out = _run(capsys, "--config", config_path, "get", "--type", E.POOL, "--id", "1")
    assert code == 0
    pool = json.loads(out)
    assert pool["status"] == E.PoolStatus.COMPLETED
    assert pool["prize_amount"] == 2_850_000_000_000_000_000

    code, out = _run(
        capsys, "--config", config_path, "list", "--type", E.POOL, "--creator", CREATOR.upper()
    )
    assert [p["id"] for p in json.loads(out)] == ["1"]

    code, out = _run(capsys, "--config", config_path, "events", "--name", "PlayerJoined")
    joined = json.loads(out)
    assert len(joined) == 3
    assert joined[0]["raw_data"]["currentPlayers"] == 3

    code, out = _run(capsys, "--config", config_path, "events", "--limit", "2")
    assert [e["event_name"] for e in json.loads(out)] == ["CreatorRewardClaimed", "GameCompleted"]

    code, out = _run(capsys, "--config", config_path, "stats")
    system = json.loads(out)
    assert system["total_staked"] == 10 * ONE_ETHER
    assert system["total_pools_completed"] == 1

    code, out = _run(capsys, "--config", config_path, "stats", "--chain-id", str(CHAIN_ID))
    assert json.loads(out)["chain_id"] == CHAIN_ID


def test_get_missing_entity(capsys, config_path):
    code, out = _run(capsys, "--config", config_path, "get", "--type", E.PLAYER, "--id", "0x0")
    assert code == 1
    assert out == ""
