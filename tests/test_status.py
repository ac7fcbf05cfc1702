"""
리전 상태 판별 모듈 테스트
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from regionhop_agent.config import Config
from regionhop_agent.errors import RegionHopError
from regionhop_agent.models import RegionStatus
from regionhop_agent.status import FleetStatusProbe, determine_status

REGION = "eu-central-1"


@pytest.mark.parametrize("exists,desired,reachable,expected", [
    (False, 0, False, RegionStatus.UNDEPLOYED),
    (False, 1, True, RegionStatus.UNDEPLOYED),
    (True, 0, False, RegionStatus.STOPPED),
    (True, 0, True, RegionStatus.STOPPED),
    (True, 1, True, RegionStatus.RUNNING),
    (True, 1, False, RegionStatus.UNHEALTHY),
])
def test_determine_status(exists, desired, reachable, expected):
    """상태 결정 표"""
    assert determine_status(exists, desired, reachable) == expected


def stack_response(asg="RegionHop-asg"):
    outputs = [{"OutputKey": "VPNServerAutoScalingGroup", "OutputValue": asg}] if asg else []
    return {"Stacks": [{"StackName": f"RegionHop-{REGION}-Compute", "Outputs": outputs}]}


@pytest.fixture
def fleet_config(tmp_path):
    cfg = Config(str(tmp_path / "missing.yaml"))
    cfg.dns.domain = "example.com"
    return cfg


@pytest.fixture
def cloudformation():
    client = MagicMock()
    client.describe_stacks.return_value = stack_response()
    return client


@pytest.fixture
def autoscaling():
    client = MagicMock()
    client.describe_auto_scaling_groups.return_value = {
        "AutoScalingGroups": [{"AutoScalingGroupName": "RegionHop-asg", "DesiredCapacity": 1}]
    }
    return client


@pytest.fixture
def network():
    checker = MagicMock()
    checker.resolve_host.return_value = ["198.51.100.7"]
    checker.probe.return_value = (True, "✓ 198.51.100.7:51820/udp 거부 응답 없음")
    return checker


def make_probe(cfg, cloudformation, autoscaling, network):
    clients = {
        ("cloudformation", REGION): cloudformation,
        ("autoscaling", REGION): autoscaling,
    }
    return FleetStatusProbe(cfg, network=network, clients=clients)


def test_running(fleet_config, cloudformation, autoscaling, network):
    """배포됨 + 용량 1 + 도달 가능 = RUNNING"""
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.RUNNING
    assert report.address == "198.51.100.7"
    network.resolve_host.assert_called_once_with("eu-central-1.regionhop.example.com")
    network.probe.assert_called_once_with("198.51.100.7", 51820, transport="udp", timeout=5)
    cloudformation.describe_stacks.assert_called_once_with(StackName="RegionHop-eu-central-1-Compute")


def test_unhealthy_when_unreachable(fleet_config, cloudformation, autoscaling, network):
    """용량은 있지만 도달 불가 = UNHEALTHY"""
    network.probe.return_value = (False, "✗ 포트 닫힘")
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.UNHEALTHY


def test_unhealthy_when_name_unresolvable(fleet_config, cloudformation, autoscaling, network):
    """랑데부 이름 조회 실패 = UNHEALTHY"""
    network.resolve_host.return_value = []
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.UNHEALTHY
    network.probe.assert_not_called()


def test_stopped_skips_reachability(fleet_config, cloudformation, autoscaling, network):
    """용량 0 = STOPPED, 도달성 체크 생략"""
    autoscaling.describe_auto_scaling_groups.return_value = {
        "AutoScalingGroups": [{"DesiredCapacity": 0}]
    }
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.STOPPED
    network.resolve_host.assert_not_called()


def test_undeployed(fleet_config, cloudformation, autoscaling, network):
    """스택 없음 = UNDEPLOYED"""
    cloudformation.describe_stacks.side_effect = ClientError(
        {"Error": {"Code": "ValidationError", "Message": "Stack with id X does not exist"}},
        "DescribeStacks",
    )
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.UNDEPLOYED
    autoscaling.describe_auto_scaling_groups.assert_not_called()


def test_fleet_read_error_is_unhealthy(fleet_config, cloudformation, autoscaling, network):
    """플릿 상태를 읽을 수 없으면 UNHEALTHY"""
    cloudformation.describe_stacks.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeStacks"
    )
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.UNHEALTHY
    assert "denied" in report.detail


def test_missing_asg_output_is_unhealthy(fleet_config, cloudformation, autoscaling, network):
    """스택에 ASG 출력이 없으면 UNHEALTHY"""
    cloudformation.describe_stacks.return_value = stack_response(asg=None)
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.UNHEALTHY


def test_set_desired_capacity(fleet_config, cloudformation, autoscaling, network):
    """시작/중지 시 desired capacity 설정"""
    probe = make_probe(fleet_config, cloudformation, autoscaling, network)
    assert probe.set_desired_capacity(REGION, 0) == "RegionHop-asg"
    autoscaling.set_desired_capacity.assert_called_once_with(
        AutoScalingGroupName="RegionHop-asg", DesiredCapacity=0
    )


def test_set_desired_capacity_undeployed(fleet_config, cloudformation, autoscaling, network):
    """배포되지 않은 리전은 시작 불가"""
    cloudformation.describe_stacks.side_effect = ClientError(
        {"Error": {"Code": "ValidationError", "Message": "Stack does not exist"}}, "DescribeStacks"
    )
    with pytest.raises(RegionHopError):
        make_probe(fleet_config, cloudformation, autoscaling, network).set_desired_capacity(REGION, 1)


def test_report_to_dict(fleet_config, cloudformation, autoscaling, network):
    """보고서 직렬화"""
    data = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION).to_dict()
    assert data["status"] == "RUNNING"
    assert data["region"] == REGION
    assert data["desired_capacity"] == 1


def test_other_region_uses_derived_name(fleet_config, cloudformation, autoscaling, network):
    """다른 리전은 고정 레코드 이름 대신 리전별 이름 사용"""
    fleet_config.dns.record_name = "vpn.example.com"
    clients = {
        ("cloudformation", "us-east-1"): cloudformation,
        ("autoscaling", "us-east-1"): autoscaling,
    }
    probe = FleetStatusProbe(fleet_config, network=network, clients=clients)
    report = probe.probe("us-east-1")
    assert report.status == RegionStatus.RUNNING
    network.resolve_host.assert_called_once_with("us-east-1.regionhop.example.com")


def test_other_region_without_domain_is_unhealthy(fleet_config, cloudformation, autoscaling, network):
    """도메인 없이 고정 이름/엔드포인트만 있으면 다른 리전은 조회하지 않음"""
    fleet_config.dns.domain = ""
    fleet_config.dns.record_name = "vpn.example.com"
    fleet_config.gateway.endpoint = "vpn.example.com"
    clients = {
        ("cloudformation", "us-east-1"): cloudformation,
        ("autoscaling", "us-east-1"): autoscaling,
    }
    probe = FleetStatusProbe(fleet_config, network=network, clients=clients)
    report = probe.probe("us-east-1")
    assert report.status == RegionStatus.UNHEALTHY
    network.resolve_host.assert_not_called()


def test_home_region_endpoint_fallback(fleet_config, cloudformation, autoscaling, network):
    """DNS 미설정 시 자기 리전은 고정 엔드포인트 사용"""
    fleet_config.dns.domain = ""
    fleet_config.gateway.endpoint = "203.0.113.10"
    report = make_probe(fleet_config, cloudformation, autoscaling, network).probe(REGION)
    assert report.status == RegionStatus.RUNNING
    network.resolve_host.assert_called_once_with("203.0.113.10")


def test_deployed_regions(fleet_config, cloudformation, network):
    """컴퓨트 스택이 있는 리전만 배포된 리전으로 집계"""
    ec2 = MagicMock()
    ec2.describe_regions.return_value = {"Regions": [
        {"RegionName": "us-east-1"}, {"RegionName": "eu-central-1"}, {"RegionName": "ap-east-1"},
    ]}
    missing = MagicMock()
    missing.describe_stacks.side_effect = ClientError(
        {"Error": {"Code": "ValidationError", "Message": "Stack does not exist"}}, "DescribeStacks"
    )
    opt_in = MagicMock()
    opt_in.describe_stacks.side_effect = ClientError(
        {"Error": {"Code": "InvalidClientTokenId", "Message": "token invalid"}}, "DescribeStacks"
    )
    stopped = MagicMock()
    stopped.describe_auto_scaling_groups.return_value = {"AutoScalingGroups": [{"DesiredCapacity": 0}]}
    clients = {
        ("ec2", REGION): ec2,
        ("cloudformation", REGION): cloudformation,
        ("autoscaling", REGION): stopped,
        ("cloudformation", "us-east-1"): missing,
        ("cloudformation", "ap-east-1"): opt_in,
    }
    probe = FleetStatusProbe(fleet_config, network=network, clients=clients)

    assert probe.candidate_regions() == ["ap-east-1", "eu-central-1", "us-east-1"]
    assert probe.deployed_regions() == [REGION]

    reports = probe.probe_all()
    assert [(r.region, r.status) for r in reports] == [(REGION, RegionStatus.STOPPED)]


def test_deployed_regions_explicit_list(fleet_config, cloudformation, network):
    """리전 목록을 지정하면 DescribeRegions 호출 안 함"""
    ec2 = MagicMock()
    clients = {("ec2", REGION): ec2, ("cloudformation", REGION): cloudformation}
    probe = FleetStatusProbe(fleet_config, network=network, clients=clients)
    assert probe.deployed_regions([REGION]) == [REGION]
    ec2.describe_regions.assert_not_called()


def test_candidate_regions_error(fleet_config, network):
    """리전 목록 조회 실패"""
    ec2 = MagicMock()
    ec2.describe_regions.side_effect = ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "denied"}}, "DescribeRegions"
    )
    probe = FleetStatusProbe(fleet_config, network=network, clients={("ec2", REGION): ec2})
    with pytest.raises(RegionHopError):
        probe.probe_all()
