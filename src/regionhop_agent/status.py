"""
리전 상태 판별 모듈
플릿 용량과 실시간 도달성 체크로 리전 배포 상태를 결정
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Config
from .errors import ConfigError, RegionHopError
from .logger import get_logger
from .models import RegionStatus
from .network import NetworkChecker


def determine_status(exists: bool, desired_capacity: int, reachable: bool) -> RegionStatus:
    """리전 상태 결정 (부작용 없는 순수 함수)"""
    if not exists:
        return RegionStatus.UNDEPLOYED
    if desired_capacity <= 0:
        return RegionStatus.STOPPED
    if reachable:
        return RegionStatus.RUNNING
    return RegionStatus.UNHEALTHY


@dataclass
class RegionReport:
    """리전 상태 보고"""
    region: str
    status: RegionStatus
    desired_capacity: int = 0
    address: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> Dict:
        return {
            "region": self.region,
            "status": self.status.value,
            "desired_capacity": self.desired_capacity,
            "address": self.address,
            "detail": self.detail,
        }


class FleetStatusProbe:
    """리전 배포 상태 조회 클래스"""

    ASG_OUTPUT_KEY = "VPNServerAutoScalingGroup"

    def __init__(self, config: Config, network: Optional[NetworkChecker] = None,
                 clients: Optional[Dict] = None, debug: bool = False):
        self.config = config
        self.debug = debug
        self.logger = get_logger()
        self.network = network or NetworkChecker(debug)
        # 리전별 boto3 클라이언트 캐시: {(service, region): client}
        self._clients = dict(clients or {})

    def client(self, service: str, region: str):
        key = (service, region)
        if key not in self._clients:
            self._clients[key] = boto3.client(service, region_name=region)
        return self._clients[key]

    def stack_outputs(self, region: str) -> Optional[List[Dict]]:
        """컴퓨트 스택 출력값. 스택이 없으면 None"""
        stack_name = self.config.stack_name("Compute", region)
        try:
            response = self.client("cloudformation", region).describe_stacks(StackName=stack_name)
        except ClientError as e:
            if "does not exist" in str(e):
                self.logger.debug(f"Stack {stack_name} does not exist")
                return None
            raise RegionHopError(f"Cannot describe stack {stack_name}: {e}")
        except BotoCoreError as e:
            raise RegionHopError(f"Cannot describe stack {stack_name}: {e}")

        stacks = response.get("Stacks") or []
        if not stacks:
            return None
        return stacks[0].get("Outputs") or []

    def asg_name(self, region: str) -> Optional[str]:
        """스택 출력에서 Auto Scaling 그룹 이름"""
        return self._asg_from_outputs(self.stack_outputs(region))

    def _asg_from_outputs(self, outputs: Optional[List[Dict]]) -> Optional[str]:
        for output in outputs or []:
            if output.get("OutputKey") == self.ASG_OUTPUT_KEY:
                return output.get("OutputValue")
        return None

    def desired_capacity(self, region: str, asg_name: str) -> int:
        """Auto Scaling 그룹의 desired capacity"""
        try:
            response = self.client("autoscaling", region).describe_auto_scaling_groups(
                AutoScalingGroupNames=[asg_name]
            )
        except (ClientError, BotoCoreError) as e:
            raise RegionHopError(f"Cannot describe auto scaling group {asg_name}: {e}")

        groups = response.get("AutoScalingGroups") or []
        if not groups:
            return 0
        return int(groups[0].get("DesiredCapacity", 0))

    def set_desired_capacity(self, region: str, capacity: int) -> str:
        """게이트웨이 시작(1)/중지(0)"""
        asg_name = self.asg_name(region)
        if not asg_name:
            raise RegionHopError(f"VPN service is not deployed in region {region}")
        try:
            self.client("autoscaling", region).set_desired_capacity(
                AutoScalingGroupName=asg_name,
                DesiredCapacity=capacity,
            )
        except (ClientError, BotoCoreError) as e:
            raise RegionHopError(f"Cannot set desired capacity of {asg_name}: {e}")
        self.logger.info(f"Desired capacity of {asg_name} set to {capacity}")
        return asg_name

    def check_reachability(self, region: str):
        """랑데부 이름을 조회하고 VPN 포트 도달성 확인

        Returns:
            (reachable, address, message)
        """
        region = region or self.config.fleet.region
        host = None
        if self.config.dns_management_enabled():
            try:
                host = self.config.rendezvous_name(region)
            except ConfigError as e:
                self.logger.warning(f"No rendezvous name for {region}: {e}")

        # 고정 엔드포인트는 이 게이트웨이 리전에만 해당
        if not host and region == self.config.fleet.region:
            host = self.config.gateway.endpoint or None

        if not host:
            return False, None, f"{region} 랑데부 주소가 설정되지 않음"

        addresses = self.network.resolve_host(host)
        if not addresses:
            return False, None, f"{host} 이름을 조회할 수 없음"

        address = addresses[0]
        reachable, msg = self.network.probe(
            address,
            self.config.gateway.port,
            transport=self.config.fleet.probe_transport,
            timeout=self.config.fleet.probe_timeout,
        )
        return reachable, address, msg

    def probe(self, region: Optional[str] = None) -> RegionReport:
        """리전 상태 조회"""
        region = region or self.config.fleet.region
        self.logger.info(f"Probing region {region}...")

        try:
            outputs = self.stack_outputs(region)
            exists = outputs is not None
            desired = 0
            if exists:
                asg_name = self._asg_from_outputs(outputs)
                if not asg_name:
                    raise RegionHopError(f"Stack output {self.ASG_OUTPUT_KEY} not found")
                desired = self.desired_capacity(region, asg_name)
        except RegionHopError as e:
            self.logger.error(f"Cannot read fleet state for {region}: {e}")
            return RegionReport(region, RegionStatus.UNHEALTHY, detail=str(e))

        reachable, address, detail = False, None, ""
        if exists and desired > 0:
            reachable, address, detail = self.check_reachability(region)

        status = determine_status(exists, desired, reachable)
        if not detail:
            detail = {
                RegionStatus.UNDEPLOYED: "배포되지 않음",
                RegionStatus.STOPPED: "Auto Scaling 그룹 용량이 0",
            }.get(status, "")

        self.logger.info(f"Region {region}: {status.value} ({detail})")
        return RegionReport(region, status, desired, address, detail)

    def candidate_regions(self) -> List[str]:
        """계정에서 사용 가능한 리전 목록 (EC2 DescribeRegions)"""
        try:
            response = self.client("ec2", self.config.fleet.region).describe_regions()
        except (ClientError, BotoCoreError) as e:
            raise RegionHopError(f"Cannot list regions: {e}")
        return sorted(r["RegionName"] for r in response.get("Regions") or [])

    def deployed_regions(self, regions: Optional[List[str]] = None) -> List[str]:
        """컴퓨트 스택이 있는 리전 목록"""
        deployed = []
        for region in regions or self.candidate_regions():
            try:
                if self.stack_outputs(region) is not None:
                    deployed.append(region)
            except RegionHopError as e:
                # 비활성화된 opt-in 리전 등은 건너뜀
                self.logger.warning(f"Skipping region {region}: {e}")
        self.logger.info(f"Deployed regions: {deployed}")
        return deployed

    def probe_all(self, regions: Optional[List[str]] = None) -> List[RegionReport]:
        """배포된 모든 리전의 상태"""
        return [self.probe(region) for region in self.deployed_regions(regions)]
