"""
도메인 모델
피어, 주소 풀, 인스턴스, 랑데부 레코드, 플릿 이벤트
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConfigError


@dataclass
class Peer:
    """VPN 클라이언트 (피어)"""
    name: str
    public_key: str
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    private_key: Optional[str] = None

    def addresses(self) -> List[str]:
        """할당된 주소 목록 (IPv4 먼저)"""
        return [addr for addr in (self.ipv4, self.ipv6) if addr]

    def address_for(self, family: int) -> Optional[str]:
        return self.ipv4 if family == 4 else self.ipv6

    def allowed_ips(self) -> str:
        """서버 측 AllowedIPs 값 (호스트 경로)"""
        routes = []
        if self.ipv4:
            routes.append(f"{self.ipv4}/32")
        if self.ipv6:
            routes.append(f"{self.ipv6}/128")
        return ", ".join(routes)


@dataclass
class AddressPool:
    """주소 패밀리별 할당 풀

    오프셋 0(네트워크 주소)과 1(게이트웨이 자신)은 할당하지 않는다.
    """
    family: int
    base: str
    start: int = 2
    end: int = 254

    def __post_init__(self):
        try:
            self.network = ipaddress.ip_network(self.base, strict=False)
        except ValueError as e:
            raise ConfigError(f"Invalid IPv{self.family} subnet '{self.base}': {e}")

        if self.network.version != self.family:
            raise ConfigError(f"Subnet {self.base} is not an IPv{self.family} network")

        # IPv4는 브로드캐스트 주소 제외
        last = self.network.num_addresses - (2 if self.family == 4 else 1)
        if self.start < 2:
            raise ConfigError(f"IPv{self.family} pool start must be >= 2 (got {self.start})")
        if self.end > last:
            raise ConfigError(f"IPv{self.family} pool end {self.end} exceeds {self.base} (max {last})")
        if self.start > self.end:
            raise ConfigError(f"IPv{self.family} pool start {self.start} is greater than end {self.end}")

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    @property
    def gateway_address(self) -> str:
        """게이트웨이 자신의 주소 (오프셋 1)"""
        return str(self.network.network_address + 1)

    def address_for(self, offset: int) -> str:
        """오프셋을 호스트 주소로 변환"""
        return str(self.network.network_address + offset)

    def offset_of(self, address: str) -> Optional[int]:
        """주소에서 오프셋 추출. 풀의 프리픽스 밖이면 None"""
        try:
            ip = ipaddress.ip_address(address.split("/")[0].strip())
        except ValueError:
            return None
        if ip.version != self.family or ip not in self.network:
            return None
        return int(ip) - int(self.network.network_address)


class InstanceState(str, Enum):
    """인스턴스 수명주기 상태"""
    LAUNCHING = "launching"
    SUCCESSFUL = "successful"
    FAILED = "failed"


@dataclass
class Instance:
    """게이트웨이를 구동하는 컴퓨트 인스턴스"""
    instance_id: str
    public_ipv4: Optional[str] = None
    public_ipv6: Optional[str] = None
    state: InstanceState = InstanceState.LAUNCHING

    def address_for(self, family: int) -> Optional[str]:
        return self.public_ipv4 if family == 4 else self.public_ipv6


@dataclass(frozen=True)
class RendezvousRecord:
    """외부에 게시되는 이름-주소 레코드"""
    name: str
    family: int
    value: str
    ttl: int = 30

    @property
    def record_type(self) -> str:
        return "A" if self.family == 4 else "AAAA"

    def to_change(self) -> Dict[str, Any]:
        """Route 53 UPSERT 변경 항목"""
        return {
            "Action": "UPSERT",
            "ResourceRecordSet": {
                "Name": self.name,
                "Type": self.record_type,
                "TTL": self.ttl,
                "ResourceRecords": [{"Value": self.value}],
            },
        }


class LifecycleStatus(str, Enum):
    """플릿 매니저가 보고하는 인스턴스 시작 상태"""
    IN_PROGRESS = "in-progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"


# Auto Scaling 이벤트의 StatusCode 값
_STATUS_CODES = {
    "InProgress": LifecycleStatus.IN_PROGRESS,
    "PreInService": LifecycleStatus.IN_PROGRESS,
    "Successful": LifecycleStatus.SUCCESSFUL,
    "Failed": LifecycleStatus.FAILED,
    "Cancelled": LifecycleStatus.FAILED,
}


@dataclass
class FleetLifecycleEvent:
    """플릿 매니저 수명주기 이벤트 (와이어 포맷과 독립)"""
    instance_id: Optional[str]
    status: LifecycleStatus
    group_id: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_eventbridge(cls, event: Dict[str, Any]) -> "FleetLifecycleEvent":
        """EventBridge Auto Scaling 이벤트에서 생성"""
        detail = event.get("detail") or {}
        code = detail.get("StatusCode", "")
        if code in _STATUS_CODES:
            status = _STATUS_CODES[code]
        else:
            try:
                status = LifecycleStatus(str(code).lower())
            except ValueError:
                raise ValueError(f"Unknown lifecycle status code: {code!r}")

        return cls(
            instance_id=detail.get("EC2InstanceId") or None,
            status=status,
            group_id=detail.get("AutoScalingGroupName", ""),
            raw=event,
        )


class RegionStatus(str, Enum):
    """리전 배포 상태"""
    UNDEPLOYED = "UNDEPLOYED"
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    UNHEALTHY = "UNHEALTHY"
