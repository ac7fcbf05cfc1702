"""
예외 정의
피어 할당, 레지스트리, 엔드포인트 갱신 오류 분류
"""


class RegionHopError(Exception):
    """RegionHop 에이전트 기본 예외"""
    pass


class ConfigError(RegionHopError):
    """설정 값이 잘못되었거나 누락됨"""
    pass


class AllocationExhausted(RegionHopError):
    """주소 풀에 할당 가능한 주소가 없음"""

    def __init__(self, family: int, start: int, end: int):
        self.family = family
        self.start = start
        self.end = end
        super().__init__(
            f"IPv{family} pool exhausted: every offset in [{start}, {end}] is assigned"
        )


class RegistryError(RegionHopError):
    """레지스트리 변경 실패 (중복 피어, 기록 실패 등)"""
    pass


class PeerNotFound(RegistryError):
    """삭제 대상 피어가 레지스트리에 없음"""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Peer not found: {identifier}")


class RegistryCorrupt(RegistryError):
    """파싱할 수 없는 피어 블록. 로그만 남기고 건너뜀"""

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Malformed peer block at line {line_number}: {reason}")


class AddressResolutionFailed(RegionHopError):
    """제한 시간 내에 인스턴스의 공인 주소를 확인하지 못함"""

    def __init__(self, instance_id: str, missing_families):
        self.instance_id = instance_id
        self.missing_families = sorted(missing_families)
        families = ", ".join(f"IPv{f}" for f in self.missing_families)
        super().__init__(f"Instance {instance_id} never reported {families} address")


class RendezvousUpdateFailed(RegionHopError):
    """DNS 레코드 갱신 API 호출 실패 (재시도 가능)"""
    pass
