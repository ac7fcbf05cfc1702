"""
CLI 메인 인터페이스
Click 및 Rich 기반 게이트웨이 운영 명령
"""

import json
import os
import sys
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from .config import Config
from .errors import AllocationExhausted, ConfigError, PeerNotFound, RegionHopError
from .gateway import GatewayService
from .logger import init_logger, get_logger
from .models import RegionStatus
from .peers import PeerManager
from .reconciler import EndpointReconciler
from .status import FleetStatusProbe

console = Console()

DEFAULT_ENV_FILE = "/etc/wireguard/env.sh"

STATUS_COLORS = {
    RegionStatus.RUNNING: "green",
    RegionStatus.STOPPED: "yellow",
    RegionStatus.UNHEALTHY: "red",
    RegionStatus.UNDEPLOYED: "dim",
}


def load_config(ctx: click.Context) -> Config:
    """설정 파일 + env.sh + 프로세스 환경 변수 로드 및 로거 초기화"""
    options = ctx.obj
    try:
        cfg = Config(options["config"])
        cfg.apply_env_file(options["env_file"])
        cfg.apply_env(os.environ)
    except ConfigError as e:
        console.print(f"[red]✗ 설정 오류: {e}[/red]")
        sys.exit(1)

    init_logger(cfg.agent.log_dir, cfg.agent.log_level, options["debug"])
    return cfg


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--env-file', type=click.Path(), default=DEFAULT_ENV_FILE, show_default=True,
              help='게이트웨이 환경 변수 파일 (env.sh)')
@click.option('--debug', is_flag=True, help='디버그 모드')
@click.pass_context
def cli(ctx, config, env_file, debug):
    """RegionHop Agent

    리전별 WireGuard VPN 게이트웨이의 피어와 엔드포인트를 관리합니다.
    """
    ctx.ensure_object(dict)
    ctx.obj.update({"config": config, "env_file": env_file, "debug": debug})


@cli.command("add-peer")
@click.argument('name')
@click.option('--no-qr', is_flag=True, help='QR 코드 출력 생략')
@click.pass_context
def add_peer(ctx, name, no_qr):
    """새 피어 추가 및 클라이언트 설정 생성"""
    cfg = load_config(ctx)
    logger = get_logger()

    try:
        manager = PeerManager(cfg, debug=ctx.obj["debug"])
        result = manager.add_peer(name)
    except AllocationExhausted as e:
        console.print(f"[red]✗ 주소 할당 실패: {e}[/red]")
        console.print("[yellow]주소 풀을 확장하거나 사용하지 않는 피어를 삭제하세요.[/yellow]")
        logger.error(f"add-peer {name} failed: {e}")
        sys.exit(1)
    except RegionHopError as e:
        console.print(f"[red]✗ 피어 추가 실패: {e}[/red]")
        logger.error(f"add-peer {name} failed: {e}")
        sys.exit(1)

    peer = result.peer
    console.print(Panel.fit(
        f"[bold green]✓ 피어 {peer.name} 생성 완료[/bold green]\n"
        f"주소: {', '.join(peer.addresses())}\n"
        f"설정 파일: {result.config_path}",
        border_style="green"
    ))
    if not result.restarted and cfg.gateway.restart_on_change:
        console.print("[yellow]⚠️  서비스 재시작에 실패했습니다. 수동으로 재시작하세요.[/yellow]")

    console.print("\n[bold]클라이언트 설정:[/bold]")
    console.print(result.client_config, markup=False, highlight=False)

    if not no_qr:
        console.print("[bold]QR 코드:[/bold]")
        console.print(result.qr, markup=False, highlight=False)


@cli.command("remove-peer")
@click.argument('name')
@click.pass_context
def remove_peer(ctx, name):
    """피어 삭제"""
    cfg = load_config(ctx)
    logger = get_logger()

    try:
        manager = PeerManager(cfg, debug=ctx.obj["debug"])
        peer = manager.remove_peer(name)
    except PeerNotFound:
        console.print(f"[red]✗ 피어 {name} 이(가) 존재하지 않습니다.[/red]")
        console.print("[cyan]등록된 피어는 list-peers 명령으로 확인하세요.[/cyan]")
        sys.exit(1)
    except RegionHopError as e:
        console.print(f"[red]✗ 피어 삭제 실패: {e}[/red]")
        logger.error(f"remove-peer {name} failed: {e}")
        sys.exit(1)

    console.print(f"[green]✓ 피어 {name} 삭제 완료 ({', '.join(peer.addresses())} 반환)[/green]")
    console.print("[yellow]기존 클라이언트 설정은 더 이상 유효하지 않습니다.[/yellow]")


@cli.command("list-peers")
@click.pass_context
def list_peers(ctx):
    """등록된 피어 목록"""
    cfg = load_config(ctx)

    try:
        peers = PeerManager(cfg, debug=ctx.obj["debug"]).list_peers()
    except RegionHopError as e:
        console.print(f"[red]✗ 피어 목록 조회 실패: {e}[/red]")
        sys.exit(1)

    if not peers:
        console.print("[yellow]등록된 피어가 없습니다.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("이름", style="cyan")
    table.add_column("IPv4")
    table.add_column("IPv6")
    table.add_column("공개키", overflow="fold")

    for peer in peers:
        table.add_row(peer.name or "-", peer.ipv4 or "-", peer.ipv6 or "-", peer.public_key)

    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """게이트웨이 서비스 상태 및 연결된 피어"""
    cfg = load_config(ctx)
    gateway = GatewayService(cfg.gateway.interface, ctx.obj["debug"])

    console.print("[bold cyan]=== WireGuard VPN Status ===[/bold cyan]\n")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    if cfg.ipv4.enabled:
        table.add_row("IPv4 서브넷", f"{cfg.ipv4.subnet} ({cfg.ipv4.start}-{cfg.ipv4.end})")
    if cfg.ipv6.enabled:
        table.add_row("IPv6 서브넷", f"{cfg.ipv6.subnet} ({cfg.ipv6.start}-{cfg.ipv6.end})")
    table.add_row("포트", str(cfg.gateway.port))
    table.add_row("엔드포인트", cfg.gateway.endpoint or (
        cfg.rendezvous_name() if cfg.dns_management_enabled() else "[red]미설정[/red]"
    ))
    console.print(table)

    active, state = gateway.service_state()
    color = "green" if active else "red"
    console.print(f"\n[bold]서버 상태:[/bold] [{color}]{state}[/{color}]\n")

    names = {}
    try:
        manager = PeerManager(cfg, gateway=gateway, debug=ctx.obj["debug"])
        names = {peer.public_key: peer.name for peer in manager.list_peers()}
    except RegionHopError as e:
        console.print(f"[yellow]⚠️  레지스트리 조회 실패: {e}[/yellow]")

    peers = gateway.show_peers()
    connected = [p for p in peers if p["connected"]]

    peer_table = Table(title=f"연결된 피어 ({len(connected)}/{len(peers)})")
    peer_table.add_column("이름", style="cyan")
    peer_table.add_column("엔드포인트")
    peer_table.add_column("주소")
    peer_table.add_column("수신/송신")
    for peer in connected:
        peer_table.add_row(
            names.get(peer["public_key"]) or peer["public_key"][:12],
            peer["endpoint"] or "-",
            peer["allowed_ips"],
            f"{peer['transfer_rx']}/{peer['transfer_tx']} B",
        )
    console.print(peer_table)

    sys.exit(0 if active else 1)


@cli.command("region-status")
@click.argument('region', required=False)
@click.option('--json', 'as_json', is_flag=True, help='JSON 으로 출력')
@click.pass_context
def region_status(ctx, region, as_json):
    """리전 배포 상태 확인 (UNDEPLOYED/STOPPED/RUNNING/UNHEALTHY)"""
    cfg = load_config(ctx)
    probe = FleetStatusProbe(cfg, debug=ctx.obj["debug"])

    with console.status("[bold green]리전 상태 확인 중...[/bold green]"):
        report = probe.probe(region)

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False))
    else:
        color = STATUS_COLORS[report.status]
        address = f" ({report.address})" if report.address else ""
        console.print(f"[bold {color}]{report.region}{address} - {report.status.value}[/bold {color}]")
        if report.detail:
            console.print(f"  {report.detail}")

    sys.exit(1 if report.status == RegionStatus.UNHEALTHY else 0)


@cli.command()
@click.option('--region', '-r', 'regions', multiple=True, help='확인할 리전 (기본: 모든 리전)')
@click.pass_context
def deployed(ctx, regions):
    """배포된 모든 리전의 상태 요약"""
    cfg = load_config(ctx)
    probe = FleetStatusProbe(cfg, debug=ctx.obj["debug"])

    try:
        with console.status("[bold green]배포된 리전 검색 중...[/bold green]"):
            reports = probe.probe_all(list(regions) or None)
    except RegionHopError as e:
        console.print(f"[red]✗ 리전 목록 조회 실패: {e}[/red]")
        sys.exit(1)

    if not reports:
        console.print("[yellow]배포된 리전이 없습니다.[/yellow]")
        sys.exit(1)

    console.print("[bold cyan]배포된 VPN 리전:[/bold cyan]")
    counts = {status: 0 for status in RegionStatus}
    for report in reports:
        counts[report.status] += 1
        color = STATUS_COLORS[report.status]
        address = f" ({report.address})" if report.address else ""
        console.print(f"  [{color}]{report.region}{address} - {report.status.value}[/{color}]")

    console.print(
        f"\n전체 {len(reports)}개 리전: "
        f"[green]RUNNING {counts[RegionStatus.RUNNING]}[/green], "
        f"[yellow]STOPPED {counts[RegionStatus.STOPPED]}[/yellow], "
        f"[red]UNHEALTHY {counts[RegionStatus.UNHEALTHY]}[/red]"
    )


@cli.command()
@click.argument('instance_id')
@click.pass_context
def reconcile(ctx, instance_id):
    """인스턴스 주소로 랑데부 DNS 레코드 수동 갱신"""
    cfg = load_config(ctx)

    reconciler = EndpointReconciler(cfg)
    with console.status("[bold green]인스턴스 주소 확인 중...[/bold green]"):
        result = reconciler.reconcile_instance(instance_id)

    for record in result.records:
        console.print(f"  {record.record_type} {record.name} -> {record.value} (TTL {record.ttl}s)")

    if result.ok:
        console.print(f"[green]✓ 재조정 완료: {result.message}[/green]")
        return

    console.print(f"[red]✗ 재조정 실패 ({result.state.value}): {result.message}[/red]")
    sys.exit(1)


def _set_capacity(ctx, region, capacity):
    cfg = load_config(ctx)
    region = region or cfg.fleet.region
    action = "시작" if capacity else "중지"

    try:
        asg_name = FleetStatusProbe(cfg, debug=ctx.obj["debug"]).set_desired_capacity(region, capacity)
    except RegionHopError as e:
        console.print(f"[red]✗ {region} VPN 서버 {action} 실패: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {region} VPN 서버 {action} 요청 완료 ({asg_name})[/green]")
    console.print(f"[cyan]상태 확인: regionhop-agent region-status {region}[/cyan]")


@cli.command()
@click.argument('region', required=False)
@click.pass_context
def start(ctx, region):
    """리전 게이트웨이 시작 (desired capacity 1)"""
    _set_capacity(ctx, region, 1)


@cli.command()
@click.argument('region', required=False)
@click.pass_context
def stop(ctx, region):
    """리전 게이트웨이 중지 (desired capacity 0)"""
    _set_capacity(ctx, region, 0)


@cli.command()
@click.argument('output', type=click.Path(), default='./config.yaml')
def init(output):
    """샘플 설정 파일 생성"""
    cfg = Config()
    cfg.create_sample(output)
    console.print(f"[green]✓ 샘플 설정 파일 생성: {output}[/green]")
    console.print("[cyan]설정 파일을 편집한 후 다음 명령어로 실행하세요:[/cyan]")
    console.print(f"[cyan]  regionhop-agent --config {output} add-peer <name>[/cyan]")


def main():
    """메인 엔트리 포인트"""
    cli()


if __name__ == '__main__':
    main()
