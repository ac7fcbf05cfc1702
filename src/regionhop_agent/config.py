"""
설정 관리 모듈
YAML/JSON 설정 파일과 env.sh 형식의 환경 변수를 통합하여 기본값 제공
"""

import os
import re
import yaml
import json
from typing import Dict, Any, List, Mapping, Optional
from dataclasses import dataclass, asdict

from .errors import ConfigError
from .models import AddressPool


@dataclass
class GatewayConfig:
    """게이트웨이 (WireGuard 서버) 설정"""
    config_path: str = "/etc/wireguard/wg0.conf"
    interface: str = "wg0"
    clients_dir: str = "/etc/wireguard/clients"
    server_public_key_file: str = "/etc/wireguard/server_public_key"
    endpoint: str = ""
    port: int = 51820
    client_dns: str = "1.1.1.1, 8.8.8.8"
    keepalive: int = 25
    restart_on_change: bool = True


@dataclass
class PoolConfig:
    """주소 풀 설정"""
    enabled: bool = True
    subnet: str = "10.8.0.0/24"
    start: int = 2
    end: int = 254


@dataclass
class DNSConfig:
    """랑데부 DNS 설정"""
    enabled: bool = True
    domain: str = ""
    hosted_zone_id: str = ""
    record_name: str = ""
    ttl: int = 30  # 초


@dataclass
class FleetConfig:
    """플릿 (리전 배포) 설정"""
    region: str = "eu-central-1"
    stack_prefix: str = "RegionHop"
    resolve_timeout: int = 60
    probe_timeout: int = 5
    probe_transport: str = "udp"


@dataclass
class AgentConfig:
    """에이전트 설정"""
    log_dir: str = "/var/log/regionhop-agent"
    log_level: str = "INFO"


# 평면 key/value 환경 인터페이스 -> (섹션, 필드)
ENV_KEYS = {
    "SERVER_ENDPOINT": ("gateway", "endpoint"),
    "VPN_PORT": ("gateway", "port"),
    "VPN_INTERFACE": ("gateway", "interface"),
    "HAS_IPV4_SUBNET": ("ipv4", "enabled"),
    "VPN_SUBNET": ("ipv4", "subnet"),
    "VPN_SUBNET_IPV4": ("ipv4", "subnet"),
    "VPN_IPV4_START": ("ipv4", "start"),
    "VPN_IPV4_END": ("ipv4", "end"),
    "HAS_IPV6_SUBNET": ("ipv6", "enabled"),
    "VPN_SUBNET_IPV6": ("ipv6", "subnet"),
    "VPN_IPV6_START": ("ipv6", "start"),
    "VPN_IPV6_END": ("ipv6", "end"),
    "DOMAIN_NAME": ("dns", "record_name"),
    "HOSTED_ZONE_ID": ("dns", "hosted_zone_id"),
    "DNS_RECORD_TTL": ("dns", "ttl"),
    "REGIONHOP_DOMAIN": ("dns", "domain"),
    "REGIONHOP_HOSTED_ZONE_ID": ("dns", "hosted_zone_id"),
    "REGIONHOP_DNS_TTL": ("dns", "ttl"),
    "AWS_REGION": ("fleet", "region"),
    "REGIONHOP_REGION": ("fleet", "region"),
    "REGIONHOP_LOG_DIR": ("agent", "log_dir"),
}

_EXPORT_LINE = re.compile(r'^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$')


def parse_env_file(path: str) -> Dict[str, str]:
    """env.sh 형식 파일 파싱 (export KEY="VALUE")"""
    values = {}
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            match = _EXPORT_LINE.match(line)
            if not match:
                continue
            key, value = match.group(1), match.group(2).strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            values[key] = value
    return values


def _coerce(current: Any, value: Any) -> Any:
    """현재 필드 타입에 맞게 값 변환"""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Expected integer, got {value!r}")
    return "" if value is None else str(value)


class Config:
    """전체 설정 관리 클래스"""

    DEFAULT_CONFIG_PATHS = [
        "/etc/regionhop-agent/config.yaml",
        "~/.regionhop-agent/config.yaml",
        "./config.yaml",
    ]

    SECTIONS = ("gateway", "ipv4", "ipv6", "dns", "fleet", "agent")

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.gateway = GatewayConfig()
        self.ipv4 = PoolConfig()
        self.ipv6 = PoolConfig(enabled=False, subnet="fd42:42:42::/64", start=2, end=65535)
        self.dns = DNSConfig()
        self.fleet = FleetConfig()
        self.agent = AgentConfig()

        if config_path:
            self.load(config_path)
        else:
            self._load_from_default_paths()

    def _load_from_default_paths(self):
        """기본 경로에서 설정 파일 로드"""
        for path in self.DEFAULT_CONFIG_PATHS:
            expanded_path = os.path.expanduser(path)
            if os.path.exists(expanded_path):
                self.load(expanded_path)
                return

    def load(self, path: str):
        """설정 파일 로드"""
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            return

        with open(path, 'r', encoding='utf-8') as f:
            try:
                if path.endswith('.json'):
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigError(f"Cannot parse config file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        self._update_from_dict(data)
        self.config_path = path

    def _update_from_dict(self, data: Dict[str, Any]):
        """딕셔너리에서 설정 업데이트"""
        for section_name in self.SECTIONS:
            values = data.get(section_name)
            if not values:
                continue
            section = getattr(self, section_name)
            for key, value in values.items():
                if hasattr(section, key):
                    setattr(section, key, _coerce(getattr(section, key), value))

    def apply_env(self, env: Mapping[str, str]):
        """평면 key/value 환경 인터페이스 적용"""
        for key, (section_name, attr) in ENV_KEYS.items():
            if key not in env or env[key] == "":
                continue
            section = getattr(self, section_name)
            setattr(section, attr, _coerce(getattr(section, attr), env[key]))

        # 레거시 VPN_SUBNET_BASE ("10.8.0.") 는 /24 로 간주
        base = env.get("VPN_SUBNET_BASE")
        if base and not env.get("VPN_SUBNET_IPV4") and not env.get("VPN_SUBNET"):
            self.ipv4.subnet = base.rstrip(".") + ".0/24"

        disabled = env.get("REGIONHOP_DISABLE_DNS", "")
        if disabled.lower() == "true":
            self.dns.enabled = False

    def apply_env_file(self, path: str):
        """env.sh 파일이 있으면 적용"""
        path = os.path.expanduser(path)
        if os.path.exists(path):
            self.apply_env(parse_env_file(path))

    def pools(self) -> List[AddressPool]:
        """활성화된 주소 풀 목록"""
        pools = []
        if self.ipv4.enabled:
            pools.append(AddressPool(4, self.ipv4.subnet, self.ipv4.start, self.ipv4.end))
        if self.ipv6.enabled:
            pools.append(AddressPool(6, self.ipv6.subnet, self.ipv6.start, self.ipv6.end))
        if not pools:
            raise ConfigError("At least one address family (IPv4 or IPv6) must be enabled")
        return pools

    def required_families(self) -> List[int]:
        """엔드포인트 갱신 시 필요한 주소 패밀리"""
        families = []
        if self.ipv4.enabled:
            families.append(4)
        if self.ipv6.enabled:
            families.append(6)
        return families

    def dns_management_enabled(self) -> bool:
        """DNS 관리 활성화 여부"""
        if not self.dns.enabled:
            return False
        return bool(self.dns.record_name or self.dns.domain)

    def rendezvous_name(self, region: Optional[str] = None) -> str:
        """리전 게이트웨이의 랑데부 이름

        고정 레코드 이름(record_name)은 이 게이트웨이의 리전에만 적용된다.
        다른 리전은 항상 <region>.regionhop.<domain> 이름을 쓴다.
        """
        region = region or self.fleet.region
        if self.dns.record_name and region == self.fleet.region:
            return self.dns.record_name
        if not self.dns.domain:
            raise ConfigError(f"DNS domain is not configured (region {region})")
        return f"{region}.regionhop.{self.dns.domain}"

    def stack_name(self, base_name: str, region: Optional[str] = None) -> str:
        """리전별 스택 이름"""
        return f"{self.fleet.stack_prefix}-{region or self.fleet.region}-{base_name}"

    def save(self, path: Optional[str] = None):
        """설정 파일 저장"""
        save_path = path or self.config_path or self.DEFAULT_CONFIG_PATHS[0]
        save_path = os.path.expanduser(save_path)

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        data = self.to_dict()

        with open(save_path, 'w', encoding='utf-8') as f:
            if save_path.endswith('.json'):
                json.dump(data, f, indent=2)
            else:
                yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {name: asdict(getattr(self, name)) for name in self.SECTIONS}

    def create_sample(self, output_path: str):
        """샘플 설정 파일 생성"""
        template = """# RegionHop Agent Configuration File
# 이 파일을 복사하여 config.yaml로 사용하세요

# 게이트웨이 설정
gateway:
  config_path: "/etc/wireguard/wg0.conf"
  interface: "wg0"
  clients_dir: "/etc/wireguard/clients"
  server_public_key_file: "/etc/wireguard/server_public_key"
  endpoint: ""  # 비워두면 DNS 이름 또는 인스턴스 공인 IP 사용
  port: 51820
  client_dns: "1.1.1.1, 8.8.8.8"
  keepalive: 25
  restart_on_change: true

# IPv4 주소 풀
ipv4:
  enabled: true
  subnet: "10.8.0.0/24"
  start: 2  # .1 은 게이트웨이 주소
  end: 254

# IPv6 주소 풀
ipv6:
  enabled: false
  subnet: "fd42:42:42::/64"
  start: 2
  end: 65535

# 랑데부 DNS 설정
dns:
  enabled: true
  domain: ""  # 예: example.com -> <region>.regionhop.example.com
  hosted_zone_id: ""  # 비워두면 루트 도메인으로 조회
  record_name: ""
  ttl: 30

# 플릿 설정
fleet:
  region: "eu-central-1"
  stack_prefix: "RegionHop"
  resolve_timeout: 60
  probe_timeout: 5
  probe_transport: "udp"  # udp 또는 tcp

# 에이전트 설정
agent:
  log_dir: "/var/log/regionhop-agent"
  log_level: "INFO"  # DEBUG, INFO, WARNING, ERROR
"""

        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(template)
