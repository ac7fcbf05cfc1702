"""
네트워크 연결성 체크 모듈
포트 도달성, DNS 조회, 인스턴스 메타데이터 조회 기능
"""

import socket
import requests
from typing import List, Optional, Tuple
from .logger import get_logger

IMDS_URL = "http://169.254.169.254/latest"


class NetworkChecker:
    """네트워크 연결성 확인 클래스"""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.logger = get_logger()

    def resolve_host(self, host: str, family: Optional[int] = None) -> List[str]:
        """호스트 이름을 주소 목록으로 조회 (family: 4, 6 또는 None)"""
        af = {4: socket.AF_INET, 6: socket.AF_INET6}.get(family, socket.AF_UNSPEC)
        try:
            self.logger.debug(f"Resolving {host} (family={family or 'any'})...")
            infos = socket.getaddrinfo(host, None, af)
        except socket.gaierror as e:
            self.logger.warning(f"✗ Cannot resolve {host}: {e}")
            return []

        addresses = []
        for info in infos:
            address = info[4][0]
            if address not in addresses:
                addresses.append(address)
        self.logger.debug(f"{host} -> {addresses}")
        return addresses

    def check_port(self, host: str, port: int, timeout: float = 5) -> Tuple[bool, str]:
        """TCP 포트 연결 테스트"""
        try:
            self.logger.debug(f"Checking TCP port {host}:{port}...")
            with socket.create_connection((host, port), timeout=timeout):
                pass
            self.logger.debug(f"✓ {host}:{port}/tcp is open")
            return True, f"✓ {host}:{port}/tcp 연결 성공"

        except socket.timeout:
            self.logger.warning(f"✗ {host}:{port}/tcp timed out")
            return False, f"✗ {host}:{port}/tcp 타임아웃"
        except socket.gaierror:
            self.logger.error(f"✗ Cannot resolve {host}")
            return False, f"✗ {host} 호스트를 찾을 수 없습니다"
        except (OSError, OverflowError) as e:
            self.logger.warning(f"✗ {host}:{port}/tcp is closed: {e}")
            return False, f"✗ {host}:{port}/tcp 연결 실패"

    def check_udp_port(self, host: str, port: int, timeout: float = 5) -> Tuple[bool, str]:
        """UDP 포트 도달성 테스트 (nc -zu 방식)

        빈 데이터그램을 보내고 timeout 동안 ICMP port unreachable 을 기다린다.
        거부 응답 없이 조용하면 수신 중인 것으로 본다. WireGuard 는 인증되지
        않은 패킷에 응답하지 않으므로 핸드셰이크 성공 여부는 알 수 없다.
        """
        sock = None
        try:
            self.logger.debug(f"Checking UDP port {host}:{port}...")
            infos = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM)
            family, socktype, proto, _, address = infos[0]
            sock = socket.socket(family, socktype, proto)
            sock.settimeout(timeout)
            sock.connect(address)
            sock.send(b"")
            sock.recv(1)
            self.logger.debug(f"✓ {host}:{port}/udp answered")
            return True, f"✓ {host}:{port}/udp 응답 수신"

        except socket.timeout:
            self.logger.debug(f"✓ {host}:{port}/udp silent (open|filtered)")
            return True, f"✓ {host}:{port}/udp 거부 응답 없음"
        except socket.gaierror:
            self.logger.error(f"✗ Cannot resolve {host}")
            return False, f"✗ {host} 호스트를 찾을 수 없습니다"
        except ConnectionRefusedError:
            self.logger.warning(f"✗ {host}:{port}/udp refused (ICMP port unreachable)")
            return False, f"✗ {host}:{port}/udp 포트 닫힘"
        except (OSError, OverflowError) as e:
            self.logger.warning(f"✗ {host}:{port}/udp unreachable: {e}")
            return False, f"✗ {host}:{port}/udp 도달 불가"
        finally:
            if sock:
                sock.close()

    def probe(self, host: str, port: int, transport: str = "udp", timeout: float = 5) -> Tuple[bool, str]:
        """전송 계층별 도달성 체크"""
        if transport.lower() == "tcp":
            return self.check_port(host, port, timeout)
        return self.check_udp_port(host, port, timeout)

    def get_instance_public_ip(self, family: int = 4, timeout: float = 2) -> Optional[str]:
        """EC2 인스턴스 메타데이터(IMDSv2)에서 공인 IP 조회"""
        path = "meta-data/public-ipv4" if family == 4 else "meta-data/ipv6"
        try:
            token = requests.put(
                f"{IMDS_URL}/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "21600"},
                timeout=timeout,
            )
            token.raise_for_status()
            response = requests.get(
                f"{IMDS_URL}/{path}",
                headers={"X-aws-ec2-metadata-token": token.text},
                timeout=timeout,
            )
            if response.status_code != 200 or not response.text.strip():
                self.logger.warning(f"Instance metadata has no IPv{family} address (status: {response.status_code})")
                return None
            address = response.text.strip()
            self.logger.debug(f"Instance public IPv{family}: {address}")
            return address
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Instance metadata unavailable: {e}")
            return None
