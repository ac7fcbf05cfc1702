"""
피어 레지스트리 모듈 테스트
"""

import multiprocessing
import os
import pytest
from regionhop_agent.allocator import AddressAllocator
from regionhop_agent.errors import PeerNotFound, RegistryError
from regionhop_agent.models import AddressPool, Peer
from regionhop_agent.registry import (
    PeerRegistry, parse_blocks, parse_host_routes, serialize_blocks,
)

SAMPLE = """[Interface]
Address = 10.8.0.1/24
ListenPort = 51820
PrivateKey = SERVERKEY=
PostUp = iptables -A FORWARD -i wg0 -j ACCEPT

[Peer]
# Name = alice
PublicKey = AAAA=
AllowedIPs = 10.8.0.2/32

[Peer]
# Name = bob
PublicKey = BBBB=
AllowedIPs = 10.8.0.3/32, fd42:42:42::3/128
"""


@pytest.fixture
def sample_path(tmp_path):
    path = tmp_path / "wg0.conf"
    path.write_text(SAMPLE)
    return path


def test_parse_serialize_roundtrip():
    """파싱 후 직렬화 시 원문 유지"""
    assert serialize_blocks(parse_blocks(SAMPLE)) == SAMPLE


def test_parse_blocks_sections():
    """블록 단위 파싱"""
    blocks = parse_blocks(SAMPLE)
    assert [b.section for b in blocks] == ["Interface", "Peer", "Peer"]
    assert blocks[1].comment_name() == "alice"
    assert blocks[2].get("allowedips") == "10.8.0.3/32, fd42:42:42::3/128"
    assert blocks[1].line_number == 7


def test_parse_host_routes():
    """호스트 경로만 추출"""
    routes, invalid = parse_host_routes("10.8.0.5/32, 0.0.0.0/0, fd42:42:42::5/128")
    assert routes == {4: ["10.8.0.5"], 6: ["fd42:42:42::5"]}
    assert invalid == []

    routes, invalid = parse_host_routes("10.8.0.300/32, fd42:42:42::6/128")
    assert routes == {4: [], 6: ["fd42:42:42::6"]}
    assert invalid == ["10.8.0.300/32"]


def test_bad_entry_keeps_other_family(tmp_path):
    """한 패밀리의 잘못된 항목이 다른 패밀리 주소를 지우지 않음"""
    path = tmp_path / "wg0.conf"
    path.write_text(
        "[Interface]\nAddress = 10.8.0.1/24\n\n"
        "[Peer]\n# Name = alice\nPublicKey = AAAA=\nAllowedIPs = 10.8.0.2/32, fd42::zz/128\n"
    )
    registry = PeerRegistry(str(path))
    assert registry.list_assigned_addresses(4) == ["10.8.0.2"]
    assert registry.list_assigned_addresses(6) == []
    assert registry.find_by_name("alice").ipv4 == "10.8.0.2"

    allocator = AddressAllocator([AddressPool(4, "10.8.0.0/24")])
    assert allocator.allocate(registry) == {4: "10.8.0.3"}


def test_missing_file_is_empty(tmp_path):
    """설정 파일이 없으면 빈 레지스트리"""
    registry = PeerRegistry(str(tmp_path / "wg0.conf"))
    assert registry.peers() == []
    assert registry.interface() == {}


def test_peers_and_lookup(sample_path):
    """피어 목록 및 조회"""
    registry = PeerRegistry(str(sample_path))
    peers = registry.peers()
    assert [p.name for p in peers] == ["alice", "bob"]
    assert registry.find_by_name("bob").ipv6 == "fd42:42:42::3"
    assert registry.find_by_key("AAAA=").ipv4 == "10.8.0.2"
    assert registry.interface()["ListenPort"] == "51820"
    assert registry.list_assigned_addresses(4) == ["10.8.0.2", "10.8.0.3"]


def test_add_peer_block_preserves_interface(sample_path):
    """피어 추가 시 [Interface] 블록과 기존 피어 유지"""
    registry = PeerRegistry(str(sample_path))
    registry.add_peer_block(Peer(name="carol", public_key="CCCC=", ipv4="10.8.0.4"))

    text = sample_path.read_text()
    assert text.startswith(SAMPLE)
    assert text.endswith("\n[Peer]\n# Name = carol\nPublicKey = CCCC=\nAllowedIPs = 10.8.0.4/32\n")

    reloaded = PeerRegistry(str(sample_path))
    assert [p.name for p in reloaded.peers()] == ["alice", "bob", "carol"]


def test_add_peer_block_rejects_duplicates(sample_path):
    """중복 공개키/이름 거부"""
    registry = PeerRegistry(str(sample_path))
    with pytest.raises(RegistryError):
        registry.add_peer_block(Peer(name="dave", public_key="AAAA=", ipv4="10.8.0.9"))
    with pytest.raises(RegistryError):
        registry.add_peer_block(Peer(name="alice", public_key="DDDD=", ipv4="10.8.0.9"))
    with pytest.raises(RegistryError):
        registry.add_peer_block(Peer(name="eve", public_key="EEEE="))
    assert sample_path.read_text() == SAMPLE


def test_remove_peer_block(sample_path):
    """피어 삭제 및 백업 생성"""
    registry = PeerRegistry(str(sample_path))
    removed = registry.remove_peer_block("AAAA=")
    assert removed.name == "alice"
    assert removed.ipv4 == "10.8.0.2"

    text = sample_path.read_text()
    assert "AAAA=" not in text
    assert "# Name = bob" in text
    assert "PostUp = iptables -A FORWARD -i wg0 -j ACCEPT" in text

    backups = [f for f in os.listdir(sample_path.parent) if ".backup." in f]
    assert len(backups) == 1


def test_remove_twice_raises_and_leaves_file(sample_path):
    """두 번째 삭제는 PeerNotFound, 파일은 바이트 단위로 동일"""
    registry = PeerRegistry(str(sample_path))
    registry.remove_peer_block("BBBB=")
    after_first = sample_path.read_bytes()

    with pytest.raises(PeerNotFound):
        registry.remove_peer_block("BBBB=")
    assert sample_path.read_bytes() == after_first


def test_malformed_block_is_skipped(tmp_path):
    """PublicKey 없는 블록은 건너뜀"""
    path = tmp_path / "wg0.conf"
    path.write_text(SAMPLE + "\n[Peer]\nAllowedIPs = 10.8.0.9/32\n")
    registry = PeerRegistry(str(path))
    assert [p.name for p in registry.peers()] == ["alice", "bob"]
    assert "10.8.0.9" not in registry.list_assigned_addresses(4)


def test_save_preserves_mode(sample_path):
    """원자적 교체 후에도 파일 권한 유지"""
    os.chmod(sample_path, 0o640)
    registry = PeerRegistry(str(sample_path))
    registry.add_peer_block(Peer(name="carol", public_key="CCCC=", ipv4="10.8.0.4"))
    assert os.stat(sample_path).st_mode & 0o777 == 0o640
    assert not [f for f in os.listdir(sample_path.parent) if f.endswith(".tmp")]


def test_locked_is_reentrant(sample_path):
    """잠금 재진입"""
    registry = PeerRegistry(str(sample_path))
    with registry.locked():
        with registry.locked():
            registry.add_peer_block(Peer(name="carol", public_key="CCCC=", ipv4="10.8.0.4"))
    assert os.path.exists(registry.lock_path)
    assert registry.find_by_name("carol") is not None


def test_failed_save_leaves_file_untouched(sample_path, monkeypatch):
    """기록 실패 시 원본 파일, 임시 파일, 메모리 상태 모두 이전 그대로"""
    registry = PeerRegistry(str(sample_path))
    before_blocks = list(registry.blocks)

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("regionhop_agent.registry.os.replace", fail_replace)
    with pytest.raises(RegistryError):
        registry.add_peer_block(Peer(name="carol", public_key="CCCC=", ipv4="10.8.0.4"))

    assert sample_path.read_text() == SAMPLE
    assert not [f for f in os.listdir(sample_path.parent) if f.endswith(".tmp")]
    assert registry.blocks == before_blocks
    assert registry.find_by_name("carol") is None


def test_crlf_line_endings_preserved(tmp_path):
    """CRLF 파일은 변경 후에도 CRLF 유지"""
    path = tmp_path / "wg0.conf"
    path.write_bytes(SAMPLE.replace("\n", "\r\n").encode())
    registry = PeerRegistry(str(path))
    registry.add_peer_block(Peer(name="carol", public_key="CCCC=", ipv4="10.8.0.4"))

    data = path.read_bytes()
    assert data.startswith(SAMPLE.replace("\n", "\r\n").encode())
    assert b"\n" not in data.replace(b"\r\n", b"")
    assert [p.name for p in PeerRegistry(str(path)).peers()] == ["alice", "bob", "carol"]


def _add_peer_in_process(path, index):
    registry = PeerRegistry(path)
    allocator = AddressAllocator([AddressPool(4, "10.8.0.0/24")])
    with registry.locked():
        addresses = allocator.allocate(registry)
        registry.add_peer_block(Peer(name=f"peer{index}", public_key=f"KEY{index}=", ipv4=addresses[4]))


def test_concurrent_writers_get_distinct_addresses(tmp_path):
    """여러 프로세스가 동시에 추가해도 주소 중복 없음"""
    path = str(tmp_path / "wg0.conf")
    with open(path, "w") as f:
        f.write("[Interface]\nAddress = 10.8.0.1/24\n")

    ctx = multiprocessing.get_context("fork")
    workers = [ctx.Process(target=_add_peer_in_process, args=(path, i)) for i in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)
    assert [w.exitcode for w in workers] == [0] * 8

    registry = PeerRegistry(path)
    addresses = registry.list_assigned_addresses(4)
    assert len(registry.peers()) == 8
    assert sorted(addresses, key=lambda a: int(a.split(".")[-1])) == [f"10.8.0.{i}" for i in range(2, 10)]
