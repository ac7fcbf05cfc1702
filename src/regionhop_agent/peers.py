"""
피어 관리 모듈
피어 추가/삭제 (키 생성, 주소 할당, 클라이언트 설정 생성, 서비스 반영)
"""

import base64
import io
import os
import re
import shutil
from dataclasses import dataclass
from typing import List, Optional, Tuple

import qrcode
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, PublicFormat,
)
from jinja2 import Template

from .allocator import AddressAllocator
from .config import Config
from .errors import ConfigError, PeerNotFound, RegistryError
from .gateway import GatewayService
from .logger import get_logger
from .models import Peer
from .network import NetworkChecker
from .registry import PeerRegistry

_PEER_NAME = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$')

CLIENT_TEMPLATE = Template("""[Interface]
PrivateKey = {{ private_key }}
Address = {{ addresses | join(", ") }}
{%- if dns %}
DNS = {{ dns }}
{%- endif %}

[Peer]
PublicKey = {{ server_public_key }}
Endpoint = {{ endpoint }}:{{ port }}
AllowedIPs = {{ allowed_ips | join(", ") }}
PersistentKeepalive = {{ keepalive }}
""")


def generate_key_pair() -> Tuple[str, str]:
    """WireGuard 키 쌍 생성 (private, public; base64)"""
    private = x25519.X25519PrivateKey.generate()
    return _encode_private(private), _encode_public(private)


def derive_public_key(private_key: str) -> str:
    """base64 개인키에서 공개키 계산"""
    raw = base64.b64decode(private_key)
    return _encode_public(x25519.X25519PrivateKey.from_private_bytes(raw))


def _encode_private(private: x25519.X25519PrivateKey) -> str:
    raw = private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return base64.b64encode(raw).decode("ascii")


def _encode_public(private: x25519.X25519PrivateKey) -> str:
    raw = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return base64.b64encode(raw).decode("ascii")


def render_qr(text: str) -> str:
    """터미널 출력용 ASCII QR 코드"""
    qr = qrcode.QRCode(border=1)
    qr.add_data(text)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


@dataclass
class AddPeerResult:
    """피어 추가 결과"""
    peer: Peer
    client_config: str
    config_path: str
    qr: str
    restarted: bool = False


class PeerManager:
    """피어 추가/삭제 관리 클래스"""

    def __init__(self, config: Config, registry: Optional[PeerRegistry] = None,
                 gateway: Optional[GatewayService] = None,
                 network: Optional[NetworkChecker] = None, debug: bool = False):
        self.config = config
        self.debug = debug
        self.logger = get_logger()
        self.registry = registry or PeerRegistry(config.gateway.config_path)
        self.gateway = gateway or GatewayService(config.gateway.interface, debug)
        self.network = network or NetworkChecker(debug)
        self.pools = config.pools()
        self.allocator = AddressAllocator(self.pools)

    def client_dir(self, name: str) -> str:
        return os.path.join(self.config.gateway.clients_dir, name)

    def server_public_key(self) -> str:
        """서버 공개키 (키 파일 우선, 없으면 [Interface] PrivateKey 에서 계산)"""
        key_file = self.config.gateway.server_public_key_file
        if key_file and os.path.exists(key_file):
            with open(key_file, 'r', encoding='utf-8') as f:
                return f.read().strip()

        private_key = self.registry.interface().get("PrivateKey")
        if private_key:
            try:
                return derive_public_key(private_key)
            except ValueError as e:
                raise ConfigError(f"Invalid gateway PrivateKey: {e}")
        raise ConfigError("Server public key not found")

    def resolve_endpoint(self) -> str:
        """클라이언트가 접속할 엔드포인트 (설정값 > 랑데부 이름 > 인스턴스 공인 IP)"""
        if self.config.gateway.endpoint:
            return self.config.gateway.endpoint
        if self.config.dns_management_enabled():
            return self.config.rendezvous_name()
        public_ip = self.network.get_instance_public_ip(4)
        if public_ip:
            return public_ip
        raise ConfigError("Server endpoint is not configured and instance metadata is unavailable")

    def render_client_config(self, peer: Peer) -> str:
        """클라이언트 설정 파일 내용 생성"""
        addresses = []
        allowed_ips = []
        for pool in self.pools:
            address = peer.address_for(pool.family)
            if address:
                addresses.append(f"{address}/{pool.network.prefixlen}")
                allowed_ips.append("0.0.0.0/0" if pool.family == 4 else "::/0")

        endpoint = self.resolve_endpoint()
        if ":" in endpoint and not endpoint.startswith("["):
            endpoint = f"[{endpoint}]"

        return CLIENT_TEMPLATE.render(
            private_key=peer.private_key,
            addresses=addresses,
            dns=self.config.gateway.client_dns,
            server_public_key=self.server_public_key(),
            endpoint=endpoint,
            port=self.config.gateway.port,
            allowed_ips=allowed_ips,
            keepalive=self.config.gateway.keepalive,
        ) + "\n"

    def _write_client_files(self, peer: Peer, client_config: str) -> str:
        """클라이언트 디렉토리에 키와 설정 파일 기록"""
        directory = self.client_dir(peer.name)
        os.makedirs(directory, exist_ok=True)
        files = {
            "client_private_key": peer.private_key + "\n",
            "client_public_key": peer.public_key + "\n",
            f"{peer.name}.conf": client_config,
        }
        for filename, content in files.items():
            path = os.path.join(directory, filename)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(content)
            os.chmod(path, 0o600)
        return os.path.join(directory, f"{peer.name}.conf")

    def add_peer(self, name: str) -> AddPeerResult:
        """피어 추가

        주소 할당이 실패하면 레지스트리를 변경하기 전에 중단한다.
        """
        if not _PEER_NAME.match(name):
            raise RegistryError(f"Invalid peer name: {name!r}")

        self.logger.info(f"Adding peer {name}...")

        with self.registry.locked():
            if self.registry.find_by_name(name) or os.path.exists(self.client_dir(name)):
                raise RegistryError(f"Peer {name} already exists")

            addresses = self.allocator.allocate(self.registry)
            private_key, public_key = generate_key_pair()
            peer = Peer(
                name=name,
                public_key=public_key,
                ipv4=addresses.get(4),
                ipv6=addresses.get(6),
                private_key=private_key,
            )

            client_config = self.render_client_config(peer)
            try:
                config_path = self._write_client_files(peer, client_config)
            except OSError as e:
                shutil.rmtree(self.client_dir(name), ignore_errors=True)
                raise RegistryError(f"Cannot write client files for {name}: {e}")

            try:
                self.registry.add_peer_block(peer)
            except RegistryError:
                # 레지스트리 기록 실패 시 클라이언트 파일 롤백
                shutil.rmtree(self.client_dir(name), ignore_errors=True)
                raise

        restarted = self._apply()
        return AddPeerResult(
            peer=peer,
            client_config=client_config,
            config_path=config_path,
            qr=render_qr(client_config),
            restarted=restarted,
        )

    def remove_peer(self, name: str) -> Peer:
        """피어 삭제 (레지스트리 블록과 클라이언트 파일)"""
        self.logger.info(f"Removing peer {name}...")

        with self.registry.locked():
            public_key = None
            peer = self.registry.find_by_name(name)
            if peer:
                public_key = peer.public_key
            else:
                key_file = os.path.join(self.client_dir(name), "client_public_key")
                if os.path.exists(key_file):
                    with open(key_file, 'r', encoding='utf-8') as f:
                        public_key = f.read().strip()

            if not public_key:
                raise PeerNotFound(name)

            try:
                removed = self.registry.remove_peer_block(public_key)
            except PeerNotFound:
                # 블록 없이 클라이언트 디렉토리만 남은 경우 정리
                if os.path.isdir(self.client_dir(name)):
                    shutil.rmtree(self.client_dir(name))
                    self.logger.warning(f"Peer {name} had no registry block, removed stale client files")
                raise PeerNotFound(name)

            if os.path.isdir(self.client_dir(name)):
                shutil.rmtree(self.client_dir(name))

        removed.name = removed.name or name
        self._apply()
        return removed

    def list_peers(self) -> List[Peer]:
        self.registry.load()
        return self.registry.peers()

    def _apply(self) -> bool:
        """변경된 설정을 게이트웨이 서비스에 반영"""
        if not self.config.gateway.restart_on_change:
            return False
        success, msg = self.gateway.restart()
        if not success:
            self.logger.warning(f"Registry updated but service restart failed: {msg}")
        return success
