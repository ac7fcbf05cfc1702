"""
게이트웨이 서비스 모듈 (wg-quick)
서비스 재시작, 상태 확인, 연결된 피어 조회
"""

import subprocess
import time
from typing import Dict, List, Optional, Tuple
from .logger import get_logger

# 마지막 핸드셰이크가 3분 이내인 피어만 연결된 것으로 본다
HANDSHAKE_TIMEOUT = 180


def parse_wg_dump(output: str, now: Optional[float] = None) -> List[Dict]:
    """'wg show <iface> dump' 출력에서 피어 목록 파싱

    첫 줄은 인터페이스 자신, 이후 줄은 탭으로 구분된 피어 정보:
    public-key, preshared-key, endpoint, allowed-ips, latest-handshake,
    transfer-rx, transfer-tx, persistent-keepalive
    """
    now = time.time() if now is None else now
    peers = []
    lines = [line for line in output.splitlines() if line.strip()]
    for line in lines[1:]:
        fields = line.split("\t")
        if len(fields) < 8:
            continue
        try:
            handshake = int(fields[4])
            rx, tx = int(fields[5]), int(fields[6])
        except ValueError:
            continue
        peers.append({
            "public_key": fields[0],
            "endpoint": None if fields[2] == "(none)" else fields[2],
            "allowed_ips": "" if fields[3] == "(none)" else fields[3],
            "latest_handshake": handshake,
            "transfer_rx": rx,
            "transfer_tx": tx,
            "connected": handshake > 0 and now - handshake <= HANDSHAKE_TIMEOUT,
        })
    return peers


class GatewayService:
    """WireGuard 게이트웨이 서비스 관리 클래스"""

    def __init__(self, interface: str = "wg0", debug: bool = False):
        self.interface = interface
        self.debug = debug
        self.logger = get_logger()

    @property
    def unit(self) -> str:
        return f"wg-quick@{self.interface}"

    def service_state(self) -> Tuple[bool, str]:
        """systemd 서비스 상태"""
        try:
            result = subprocess.run(
                ["systemctl", "is-active", self.unit],
                capture_output=True,
                text=True,
                timeout=10
            )
            state = result.stdout.strip() or "unknown"
            active = result.returncode == 0 and state == "active"
            self.logger.debug(f"{self.unit}: {state}")
            return active, state

        except FileNotFoundError:
            return False, "systemctl_not_found"
        except subprocess.TimeoutExpired:
            return False, "timeout"

    def restart(self) -> Tuple[bool, str]:
        """설정 변경 적용을 위해 서비스 재시작"""
        try:
            self.logger.info(f"Restarting {self.unit}...")
            result = subprocess.run(
                ["systemctl", "restart", self.unit],
                capture_output=True,
                text=True,
                timeout=30
            )

            if result.returncode == 0:
                self.logger.info(f"{self.unit} restarted")
                return True, "재시작 완료"
            else:
                error_msg = result.stderr.strip() or result.stdout.strip()
                self.logger.error(f"Failed to restart {self.unit}: {error_msg}")
                return False, error_msg

        except FileNotFoundError:
            self.logger.warning("systemctl not found, skipping service restart")
            return False, "systemctl 없음"
        except subprocess.TimeoutExpired:
            self.logger.error(f"Restart of {self.unit} timed out")
            return False, "재시작 타임아웃"

    def show_peers(self) -> List[Dict]:
        """현재 인터페이스의 피어 상태"""
        try:
            result = subprocess.run(
                ["wg", "show", self.interface, "dump"],
                capture_output=True,
                text=True,
                timeout=10
            )
            if result.returncode != 0:
                self.logger.warning(f"wg show failed: {result.stderr.strip()}")
                return []
            return parse_wg_dump(result.stdout)

        except FileNotFoundError:
            self.logger.warning("wg command not found")
            return []
        except subprocess.TimeoutExpired:
            self.logger.error("wg show timed out")
            return []
