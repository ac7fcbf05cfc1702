"""
피어 레지스트리 모듈
게이트웨이의 wg0.conf 를 블록 단위로 파싱하여 피어 목록을 관리

wg0.conf 는 게이트웨이의 실행 설정이자 피어 목록의 유일한 원본이다.
모든 변경은 블록 리스트를 수정한 뒤 임시 파일에 다시 직렬화하고
원자적으로 교체한다. 변경 작업은 같은 디렉토리의 .lock 파일에 대한
advisory lock 안에서 수행된다.
"""

import fcntl
import ipaddress
import os
import re
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import PeerNotFound, RegistryCorrupt, RegistryError
from .logger import get_logger
from .models import Peer

_SECTION_HEADER = re.compile(r'^\s*\[([A-Za-z]+)\]\s*$')
_ENTRY = re.compile(r'^\s*([A-Za-z][A-Za-z0-9]*)\s*=\s*(.*?)\s*$')
_NAME_COMMENT = re.compile(r'^\s*#\s*Name\s*=\s*(.+?)\s*$')


@dataclass
class ConfigBlock:
    """설정 파일의 블록 하나 ([Interface], [Peer] 또는 헤더 앞부분)

    lines 에는 헤더 다음 줄부터 다음 헤더 직전까지의 원문 줄이 그대로 들어간다.
    """
    section: Optional[str]
    lines: List[str] = field(default_factory=list)
    line_number: int = 0

    def entries(self) -> List[Tuple[str, str]]:
        """key = value 항목 목록 (순서 유지)"""
        result = []
        for line in self.lines:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            match = _ENTRY.match(line)
            if match:
                result.append((match.group(1), match.group(2)))
        return result

    def get(self, key: str) -> Optional[str]:
        """첫 번째 key 값 (대소문자 무시)"""
        for entry_key, value in self.entries():
            if entry_key.lower() == key.lower():
                return value
        return None

    def comment_name(self) -> Optional[str]:
        """'# Name = <peer>' 주석에서 피어 이름 추출"""
        for line in self.lines:
            match = _NAME_COMMENT.match(line)
            if match:
                return match.group(1)
        return None

    def render(self) -> List[str]:
        """블록을 줄 목록으로 직렬화"""
        header = [f"[{self.section}]"] if self.section else []
        return header + list(self.lines)


def parse_blocks(text: str) -> List[ConfigBlock]:
    """설정 텍스트를 블록 리스트로 파싱"""
    blocks: List[ConfigBlock] = []
    current = ConfigBlock(section=None, line_number=0)

    for number, line in enumerate(text.splitlines(), start=1):
        match = _SECTION_HEADER.match(line)
        if match:
            if current.section is not None or current.lines:
                blocks.append(current)
            current = ConfigBlock(section=match.group(1), line_number=number)
        else:
            current.lines.append(line)

    if current.section is not None or current.lines:
        blocks.append(current)
    return blocks


def serialize_blocks(blocks: List[ConfigBlock], newline: str = "\n") -> str:
    """블록 리스트를 설정 텍스트로 직렬화

    헤더가 있는 블록 앞에는 항상 빈 줄 하나로 구분한다.
    """
    lines: List[str] = []
    for block in blocks:
        if block.section and lines and lines[-1].strip():
            lines.append("")
        lines.extend(block.render())
    if not lines:
        return ""
    return newline.join(lines) + newline


def parse_host_routes(allowed_ips: str) -> Tuple[Dict[int, List[str]], List[str]]:
    """AllowedIPs 값에서 패밀리별 호스트 주소(/32, /128) 추출

    항목마다 따로 파싱한다. 파싱할 수 없는 항목은 두 번째 값으로 돌려주고
    나머지 항목은 그대로 사용한다.
    """
    routes: Dict[int, List[str]] = {4: [], 6: []}
    invalid = []
    for item in allowed_ips.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            network = ipaddress.ip_network(item, strict=False)
        except ValueError:
            invalid.append(item)
            continue
        if network.prefixlen == network.max_prefixlen:
            routes[network.version].append(str(network.network_address))
    return routes, invalid


class PeerRegistry:
    """게이트웨이 피어 레지스트리 (wg0.conf)"""

    def __init__(self, path: str, backup_on_remove: bool = True):
        self.path = path
        self.backup_on_remove = backup_on_remove
        self.logger = get_logger()
        self.blocks: List[ConfigBlock] = []
        self.newline = "\n"
        self._lock_depth = 0
        self._lock_file = None
        self.load()

    @property
    def lock_path(self) -> str:
        return self.path + ".lock"

    def load(self):
        """설정 파일 읽기. 파일이 없으면 빈 레지스트리"""
        if not os.path.exists(self.path):
            self.logger.debug(f"Registry {self.path} does not exist yet, starting empty")
            self.blocks = []
            self.newline = "\n"
            return

        # 줄바꿈 변환 없이 읽어 원래 줄 끝(CRLF/LF)을 유지
        with open(self.path, 'r', encoding='utf-8', newline='') as f:
            text = f.read()
        self.newline = "\r\n" if "\r\n" in text else "\n"
        self.blocks = parse_blocks(text)
        self.logger.debug(f"Loaded {len(self.blocks)} blocks from {self.path}")

    @contextmanager
    def locked(self) -> Iterator["PeerRegistry"]:
        """단일 writer 잠금. 잠금 획득 후 최신 내용을 다시 읽는다 (재진입 가능)"""
        if self._lock_depth > 0:
            self._lock_depth += 1
            try:
                yield self
            finally:
                self._lock_depth -= 1
            return

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        lock_file = open(self.lock_path, 'a')
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            self._lock_file = lock_file
            self._lock_depth = 1
            self.load()
            yield self
        finally:
            self._lock_depth = 0
            self._lock_file = None
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            lock_file.close()

    def interface(self) -> Dict[str, str]:
        """게이트웨이 [Interface] 블록 항목"""
        for block in self.blocks:
            if block.section and block.section.lower() == "interface":
                return dict(block.entries())
        return {}

    def _peer_blocks(self) -> List[ConfigBlock]:
        return [b for b in self.blocks if b.section and b.section.lower() == "peer"]

    def _peer_from_block(self, block: ConfigBlock) -> Optional[Peer]:
        """블록을 Peer 로 변환. 깨진 블록은 경고 후 None"""
        public_key = block.get("PublicKey")
        if not public_key:
            self.logger.warning(str(RegistryCorrupt(block.line_number, "missing PublicKey")))
            return None

        routes = self._block_routes(block)
        return Peer(
            name=block.comment_name() or "",
            public_key=public_key,
            ipv4=routes[4][0] if routes[4] else None,
            ipv6=routes[6][0] if routes[6] else None,
        )

    def _block_routes(self, block: ConfigBlock) -> Dict[int, List[str]]:
        """블록의 호스트 경로. 잘못된 항목만 경고 후 제외"""
        routes, invalid = parse_host_routes(block.get("AllowedIPs") or "")
        for item in invalid:
            self.logger.warning(str(RegistryCorrupt(block.line_number, f"bad AllowedIPs entry {item!r}")))
        return routes

    def peers(self) -> List[Peer]:
        """등록된 피어 목록 (파일 순서)"""
        result = []
        for block in self._peer_blocks():
            peer = self._peer_from_block(block)
            if peer:
                result.append(peer)
        return result

    def find_by_name(self, name: str) -> Optional[Peer]:
        for peer in self.peers():
            if peer.name == name:
                return peer
        return None

    def find_by_key(self, public_key: str) -> Optional[Peer]:
        for peer in self.peers():
            if peer.public_key == public_key:
                return peer
        return None

    def list_assigned_addresses(self, family: int) -> List[str]:
        """해당 패밀리에 할당된 모든 주소 (저장된 인덱스가 아닌 매번 스캔)"""
        addresses = []
        for block in self._peer_blocks():
            if not block.get("PublicKey"):
                self.logger.warning(str(RegistryCorrupt(block.line_number, "missing PublicKey")))
                continue
            addresses.extend(self._block_routes(block)[family])
        return addresses

    def add_peer_block(self, peer: Peer):
        """피어 블록 추가 후 저장"""
        if not peer.addresses():
            raise RegistryError(f"Peer {peer.name or peer.public_key} has no assigned address")

        with self.locked():
            if self.find_by_key(peer.public_key):
                raise RegistryError(f"Public key already registered: {peer.public_key}")
            if peer.name and self.find_by_name(peer.name):
                raise RegistryError(f"Peer name already registered: {peer.name}")

            lines = []
            if peer.name:
                lines.append(f"# Name = {peer.name}")
            lines.append(f"PublicKey = {peer.public_key}")
            lines.append(f"AllowedIPs = {peer.allowed_ips()}")

            previous = self.blocks
            self.blocks = previous + [ConfigBlock(section="Peer", lines=lines)]
            try:
                self.save()
            except RegistryError:
                self.blocks = previous
                raise

        self.logger.info(f"Added peer {peer.name or '-'} ({', '.join(peer.addresses())})")

    def remove_peer_block(self, public_key: str) -> Peer:
        """PublicKey 가 일치하는 블록 하나를 제거 후 저장"""
        with self.locked():
            for index, block in enumerate(self.blocks):
                if not block.section or block.section.lower() != "peer":
                    continue
                if block.get("PublicKey") != public_key:
                    continue

                removed = self._peer_from_block(block)
                if self.backup_on_remove:
                    self.backup()

                previous = self.blocks
                self.blocks = previous[:index] + previous[index + 1:]
                try:
                    self.save()
                except RegistryError:
                    self.blocks = previous
                    raise

                self.logger.info(f"Removed peer block for key {public_key}")
                return removed

        raise PeerNotFound(public_key)

    def backup(self) -> Optional[str]:
        """현재 설정 파일의 타임스탬프 백업 생성"""
        if not os.path.exists(self.path):
            return None
        backup_path = f"{self.path}.backup.{int(time.time())}"
        shutil.copy2(self.path, backup_path)
        self.logger.debug(f"Registry backup created: {backup_path}")
        return backup_path

    def render(self) -> str:
        return serialize_blocks(self.blocks, self.newline)

    def save(self):
        """임시 파일에 기록 후 원자적으로 교체"""
        directory = os.path.dirname(os.path.abspath(self.path))
        mode = 0o600
        if os.path.exists(self.path):
            mode = os.stat(self.path).st_mode & 0o777

        tmp_name = None
        try:
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                newline="",
                dir=directory,
                prefix=".wg-",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(self.render())
                tmp.flush()
                os.fsync(tmp.fileno())

            os.chmod(tmp_name, mode)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            self.logger.error(f"Failed to write registry {self.path}: {e}")
            raise RegistryError(f"Cannot write {self.path}: {e}")
