"""
공통 테스트 픽스처
"""

import pytest
from regionhop_agent.config import Config
from regionhop_agent.logger import init_logger


@pytest.fixture(autouse=True)
def agent_logger(tmp_path_factory):
    """테스트마다 임시 디렉토리로 로거 초기화"""
    return init_logger(str(tmp_path_factory.mktemp("logs")), "DEBUG", False)


@pytest.fixture
def gateway_conf(tmp_path):
    """게이트웨이 [Interface] 만 있는 wg0.conf"""
    path = tmp_path / "wg0.conf"
    path.write_text(
        "[Interface]\n"
        "Address = 10.8.0.1/24\n"
        "ListenPort = 51820\n"
        "PrivateKey = yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk=\n"
    )
    return path


@pytest.fixture
def config(tmp_path, gateway_conf):
    """임시 디렉토리를 사용하는 설정 (서비스 재시작 없음)"""
    cfg = Config(str(tmp_path / "missing.yaml"))
    cfg.gateway.config_path = str(gateway_conf)
    cfg.gateway.clients_dir = str(tmp_path / "clients")
    cfg.gateway.server_public_key_file = str(tmp_path / "server_public_key")
    cfg.gateway.endpoint = "vpn.example.com"
    cfg.gateway.restart_on_change = False
    cfg.dns.domain = "example.com"
    return cfg
