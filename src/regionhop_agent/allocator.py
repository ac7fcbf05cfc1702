"""
주소 할당 모듈
패밀리별로 독립적인 first-fit (가장 낮은 빈 오프셋) 할당
"""

from typing import Dict, Iterable, List, Set

from .errors import AllocationExhausted
from .logger import get_logger
from .models import AddressPool


def next_offset(pool: AddressPool, assigned: Iterable[int]) -> int:
    """[start, end] 범위에서 사용되지 않은 가장 낮은 오프셋

    삭제된 피어의 오프셋은 다음 할당에서 재사용된다.
    """
    used: Set[int] = set(assigned)
    for offset in range(pool.start, pool.end + 1):
        if offset not in used:
            return offset
    raise AllocationExhausted(pool.family, pool.start, pool.end)


class AddressAllocator:
    """피어 주소 할당기"""

    def __init__(self, pools: List[AddressPool]):
        self.pools = pools
        self.logger = get_logger()

    def assigned_offsets(self, pool: AddressPool, addresses: Iterable[str]) -> Set[int]:
        """주소 문자열에서 풀 기준 오프셋 추출 (풀 밖의 주소는 무시)"""
        offsets = set()
        for address in addresses:
            offset = pool.offset_of(address)
            if offset is None:
                self.logger.debug(f"Ignoring {address}: outside IPv{pool.family} pool {pool.base}")
                continue
            offsets.add(offset)
        return offsets

    def allocate(self, registry) -> Dict[int, str]:
        """활성화된 모든 패밀리에 대해 다음 주소 계산

        레지스트리는 변경하지 않는다. 한 패밀리라도 고갈되면
        AllocationExhausted 를 던지고 아무 주소도 반환하지 않는다.
        """
        result = {}
        for pool in self.pools:
            assigned = self.assigned_offsets(pool, registry.list_assigned_addresses(pool.family))
            offset = next_offset(pool, assigned)
            result[pool.family] = pool.address_for(offset)
            self.logger.debug(
                f"IPv{pool.family}: {len(assigned)} assigned, next offset {offset} -> {result[pool.family]}"
            )
        return result
