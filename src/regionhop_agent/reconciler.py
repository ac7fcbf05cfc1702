"""
엔드포인트 재조정 모듈
게이트웨이 인스턴스 교체 시 새 공인 주소를 찾아 랑데부 DNS 레코드를 갱신

플릿 매니저(Auto Scaling)의 인스턴스 시작 이벤트마다 한 번씩 실행된다.
갱신에 실패하면 이전 레코드가 그대로 남는다 (다음 성공 시까지 기존 값 유지).
"""

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from .config import Config
from .errors import AddressResolutionFailed, RegionHopError, RendezvousUpdateFailed
from .logger import get_logger
from .models import FleetLifecycleEvent, Instance, InstanceState, LifecycleStatus, RendezvousRecord


class ReconcileState(str, Enum):
    """재조정 시도 상태"""
    TRIGGERED = "triggered"
    RESOLVING = "resolving"
    UPSERTING = "upserting"
    DONE = "done"
    ABORTED = "aborted"
    SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    """재조정 시도 결과"""
    event: FleetLifecycleEvent
    state: ReconcileState = ReconcileState.TRIGGERED
    addresses: Dict[int, str] = field(default_factory=dict)
    records: List[RendezvousRecord] = field(default_factory=list)
    error: Optional[RegionHopError] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state in (ReconcileState.DONE, ReconcileState.SKIPPED) and self.error is None


class InstanceAddressResolver:
    """EC2 인스턴스 공인 주소 조회 (주소 할당 지연을 고려한 재시도)"""

    def __init__(self, ec2_client, timeout: float = 60, max_attempts: int = 10,
                 sleep: Callable[[float], None] = time.sleep):
        self.ec2 = ec2_client
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.logger = get_logger()

    def describe(self, instance_id: str) -> Instance:
        """DescribeInstances 결과를 Instance 로 변환"""
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        instance = Instance(instance_id=instance_id)

        reservations = response.get("Reservations") or []
        if not reservations or not reservations[0].get("Instances"):
            return instance

        data = reservations[0]["Instances"][0]
        instance.public_ipv4 = data.get("PublicIpAddress")
        instance.public_ipv6 = data.get("Ipv6Address")
        if not instance.public_ipv6:
            for interface in data.get("NetworkInterfaces") or []:
                ipv6_addresses = interface.get("Ipv6Addresses") or []
                if ipv6_addresses and ipv6_addresses[0].get("Ipv6Address"):
                    instance.public_ipv6 = ipv6_addresses[0]["Ipv6Address"]
                    break

        state = (data.get("State") or {}).get("Name", "")
        if state == "running":
            instance.state = InstanceState.SUCCESSFUL
        elif state in ("shutting-down", "terminated", "stopped"):
            instance.state = InstanceState.FAILED
        return instance

    def resolve(self, instance_id: str, families: Iterable[int]) -> Instance:
        """필요한 패밀리 주소가 모두 보일 때까지 지수 백오프로 재시도

        제한 시간이 지나면 마지막 조회 결과를 그대로 반환한다.
        """
        families = list(families)

        def incomplete(instance: Instance) -> bool:
            return any(not instance.address_for(f) for f in families)

        retrying = Retrying(
            retry=retry_if_result(incomplete) | retry_if_exception_type(ClientError),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            stop=stop_after_delay(self.timeout) | stop_after_attempt(self.max_attempts),
            before_sleep=before_sleep_log(logging.getLogger("regionhop_agent"), logging.INFO),
            sleep=self.sleep,
        )

        try:
            return retrying(self.describe, instance_id)
        except RetryError as e:
            outcome = e.last_attempt
            if outcome.failed:
                error = outcome.exception()
                self.logger.error(f"DescribeInstances failed for {instance_id}: {error}")
                raise RegionHopError(f"Cannot describe instance {instance_id}: {error}")
            return outcome.result()
        except BotoCoreError as e:
            raise RegionHopError(f"Cannot describe instance {instance_id}: {e}")


class Route53Publisher:
    """Route 53 랑데부 레코드 게시"""

    def __init__(self, route53_client, hosted_zone_id: Optional[str] = None):
        self.route53 = route53_client
        self.hosted_zone_id = hosted_zone_id or None
        self.logger = get_logger()

    def find_hosted_zone(self, name: str) -> Optional[str]:
        """루트 도메인으로 호스티드 존 ID 조회"""
        parts = name.rstrip(".").split(".")
        root = ".".join(parts[-2:]) if len(parts) > 2 else name.rstrip(".")

        try:
            response = self.route53.list_hosted_zones_by_name(DNSName=root)
        except (ClientError, BotoCoreError) as e:
            self.logger.error(f"Failed to find hosted zone for {root}: {e}")
            return None

        for zone in response.get("HostedZones") or []:
            if zone.get("Name") == f"{root}.":
                return zone["Id"].replace("/hostedzone/", "")
        return None

    def upsert(self, records: List[RendezvousRecord]) -> Optional[str]:
        """레코드 UPSERT (같은 이름/타입은 하나로 합침)"""
        unique: Dict[Any, RendezvousRecord] = {}
        for record in records:
            unique[(record.name, record.record_type)] = record
        if not unique:
            self.logger.warning("No DNS records to update")
            return None

        zone_id = self.hosted_zone_id or self.find_hosted_zone(next(iter(unique.values())).name)
        if not zone_id:
            raise RendezvousUpdateFailed("Could not find hosted zone for rendezvous record")

        changes = [record.to_change() for record in unique.values()]
        for record in unique.values():
            self.logger.info(f"Preparing {record.record_type} record: {record.name} -> {record.value} (TTL {record.ttl}s)")

        try:
            response = self.route53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={"Comment": "RegionHop endpoint reconciliation", "Changes": changes},
            )
        except (ClientError, BotoCoreError) as e:
            self.logger.error(f"Failed to update DNS records: {e}")
            raise RendezvousUpdateFailed(f"ChangeResourceRecordSets failed: {e}")

        change_id = (response.get("ChangeInfo") or {}).get("Id")
        self.logger.info(f"DNS records updated (change: {change_id})")
        return change_id


class EndpointReconciler:
    """인스턴스 교체 이벤트에 반응하여 랑데부 레코드를 재조정"""

    def __init__(self, config: Config, ec2_client=None, route53_client=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.logger = get_logger()
        self._ec2 = ec2_client
        self._route53 = route53_client
        self.sleep = sleep

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.config.fleet.region)
        return self._ec2

    @property
    def route53(self):
        if self._route53 is None:
            self._route53 = boto3.client("route53")
        return self._route53

    def handle(self, event: FleetLifecycleEvent) -> ReconcileResult:
        """수명주기 이벤트 하나 처리 (예외를 던지지 않음)"""
        result = ReconcileResult(event=event)
        self.logger.info(
            f"Lifecycle event: instance={event.instance_id} status={event.status.value} group={event.group_id}"
        )

        if event.status == LifecycleStatus.FAILED:
            self.logger.info(f"Instance launch failed for group {event.group_id}, nothing to publish")
            result.state = ReconcileState.SKIPPED
            result.message = "launch failed"
            return result

        if not event.instance_id:
            result.state = ReconcileState.SKIPPED
            result.message = "no instance id"
            return result

        if not self.config.dns_management_enabled():
            self.logger.info("DNS management disabled, skipping rendezvous update")
            result.state = ReconcileState.SKIPPED
            result.message = "dns management disabled"
            return result

        families = self.config.required_families()
        name = self.config.rendezvous_name()

        # 주소 조회
        result.state = ReconcileState.RESOLVING
        try:
            resolver = InstanceAddressResolver(
                self.ec2, timeout=self.config.fleet.resolve_timeout, sleep=self.sleep
            )
            instance = resolver.resolve(event.instance_id, families)
        except (RegionHopError, BotoCoreError) as e:
            result.state = ReconcileState.ABORTED
            result.error = e if isinstance(e, RegionHopError) else RegionHopError(str(e))
            result.message = str(e)
            self.logger.error(f"Reconciliation aborted: {e}")
            return result

        for family in families:
            address = instance.address_for(family)
            if address:
                result.addresses[family] = address
                self.logger.info(f"Found public IPv{family} {address} for instance {event.instance_id}")
            else:
                self.logger.warning(f"No public IPv{family} found for instance {event.instance_id}")

        missing = [f for f in families if f not in result.addresses]
        if not result.addresses:
            result.state = ReconcileState.ABORTED
            result.error = AddressResolutionFailed(event.instance_id, missing)
            result.message = str(result.error)
            self.logger.error(result.message)
            return result

        # 확인된 패밀리는 누락된 패밀리가 있어도 게시
        result.state = ReconcileState.UPSERTING
        result.records = [
            RendezvousRecord(name=name, family=family, value=address, ttl=self.config.dns.ttl)
            for family, address in sorted(result.addresses.items())
        ]
        try:
            publisher = Route53Publisher(self.route53, self.config.dns.hosted_zone_id)
            publisher.upsert(result.records)
        except (RendezvousUpdateFailed, BotoCoreError) as e:
            result.state = ReconcileState.ABORTED
            result.error = e if isinstance(e, RegionHopError) else RendezvousUpdateFailed(str(e))
            result.message = str(e)
            self.logger.error(f"Rendezvous update failed, previous record stays in place: {e}")
            return result

        result.state = ReconcileState.DONE
        if missing:
            result.error = AddressResolutionFailed(event.instance_id, missing)
            result.message = str(result.error)
            self.logger.error(f"Partial update for {name}: {result.message}")
        else:
            result.message = f"updated {name}"
            self.logger.info(f"Successfully updated DNS for {name}: {result.addresses}")
        return result

    def reconcile_instance(self, instance_id: str) -> ReconcileResult:
        """수동 재조정 (성공 이벤트로 처리)"""
        return self.handle(FleetLifecycleEvent(instance_id=instance_id, status=LifecycleStatus.SUCCESSFUL))


def lambda_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """EventBridge Auto Scaling 이벤트용 Lambda 진입점"""
    logger = get_logger()

    config = Config()
    config.apply_env(os.environ)
    if not config.dns_management_enabled():
        logger.error("Missing required environment variables")
        return {"statusCode": 400, "body": "Missing required environment variables"}

    try:
        lifecycle_event = FleetLifecycleEvent.from_eventbridge(event)
    except ValueError as e:
        logger.error(f"Invalid lifecycle event: {e}")
        return {"statusCode": 400, "body": str(e)}

    result = EndpointReconciler(config).handle(lifecycle_event)
    if result.ok:
        return {"statusCode": 200, "body": "DNS update completed"}
    return {"statusCode": 500, "body": f"Error: {result.message}"}
