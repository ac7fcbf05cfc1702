"""
게이트웨이 서비스 모듈 테스트
"""

import subprocess
from unittest.mock import patch

from regionhop_agent.gateway import GatewayService, parse_wg_dump

DUMP = (
    "PRIVATEKEY=\tPUBLICKEY=\t51820\toff\n"
    "AAAA=\t(none)\t198.51.100.20:40000\t10.8.0.2/32\t1000\t2048\t4096\t25\n"
    "BBBB=\t(none)\t(none)\t10.8.0.3/32\t0\t0\t0\toff\n"
    "CCCC=\t(none)\t198.51.100.30:40000\t10.8.0.4/32\t500\t10\t20\t25\n"
)


def test_parse_wg_dump():
    """wg show dump 파싱"""
    peers = parse_wg_dump(DUMP, now=1100)
    assert [p["public_key"] for p in peers] == ["AAAA=", "BBBB=", "CCCC="]

    alice, bob, carol = peers
    assert alice["connected"] is True
    assert alice["endpoint"] == "198.51.100.20:40000"
    assert alice["transfer_tx"] == 4096
    assert bob["endpoint"] is None
    assert bob["connected"] is False
    assert carol["connected"] is False


def test_parse_wg_dump_skips_garbage():
    """형식이 맞지 않는 줄은 무시"""
    assert parse_wg_dump("iface\nnot a peer line\n") == []
    assert parse_wg_dump("") == []


def test_service_state():
    """systemctl is-active 결과"""
    gateway = GatewayService("wg0")
    completed = subprocess.CompletedProcess(["systemctl"], 0, stdout="active\n", stderr="")
    with patch("regionhop_agent.gateway.subprocess.run", return_value=completed) as run:
        assert gateway.service_state() == (True, "active")
    run.assert_called_once()
    assert run.call_args[0][0] == ["systemctl", "is-active", "wg-quick@wg0"]


def test_restart_without_systemctl():
    """systemctl 이 없으면 실패 반환"""
    gateway = GatewayService("wg0")
    with patch("regionhop_agent.gateway.subprocess.run", side_effect=FileNotFoundError):
        success, _ = gateway.restart()
    assert success is False


def test_show_peers_failure():
    """wg show 실패 시 빈 목록"""
    gateway = GatewayService("wg0")
    completed = subprocess.CompletedProcess(["wg"], 1, stdout="", stderr="Unable to access interface")
    with patch("regionhop_agent.gateway.subprocess.run", return_value=completed):
        assert gateway.show_peers() == []
