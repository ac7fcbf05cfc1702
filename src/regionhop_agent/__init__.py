"""
RegionHop Agent
리전별 WireGuard VPN 게이트웨이와 피어 메타데이터를 관리하는 에이전트

Features:
- 피어 추가/삭제 및 충돌 없는 터널 주소 할당 (IPv4/IPv6)
- 인스턴스 교체 시 랑데부 DNS 레코드 자동 갱신
- 리전 배포 상태 판별 (UNDEPLOYED/STOPPED/RUNNING/UNHEALTHY)
- 원자적 설정 파일 기록 및 단일 writer 잠금
"""

__version__ = "1.0.0"
__author__ = "DevOps Team"
