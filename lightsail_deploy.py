#!/usr/bin/env python3
"""Provision an Ubuntu host and deploy a static React build behind nginx.

Run it on a fresh Lightsail instance as the ubuntu user, or point it at one
over SSH with ``--host``. Missing packages are installed, the app is
scaffolded and built, and nginx is reconfigured to serve the new build.

Usage: uv run lightsail-deploy [command] [options]

Examples:
    uv run lightsail-deploy
    uv run lightsail-deploy --app-source ./terraform-deployer.jsx
    uv run lightsail-deploy --host 3.25.10.4 --ssh-user ubuntu
    uv run lightsail-deploy verify --domain example.com
    uv run lightsail-deploy backups
"""

import base64
import io
import ipaddress
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Callable, Literal, Protocol

import cyclopts
import dns.exception
import dns.resolver
from fabric import Connection
from invoke.exceptions import CommandTimedOut
from rich import print
from rich.markup import escape

app = cyclopts.App(
    name="lightsail-deploy",
    help="Provision a host and deploy a static web build behind nginx",
    sort_key=None,
)

DEFAULT_APP_NAME = "terraform-deployer"
DOCUMENT_ROOT = "/var/www/html"
SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
WEB_USER = "www-data"
WEB_MODE = "755"
NODE_VERSION = 20
EXTRA_DEPENDENCY = "lucide-react"
VITE_TEMPLATE = "react"
IP_LOOKUP_URL = "https://ifconfig.me"

COMMAND_TIMEOUT = 300
INSTALL_TIMEOUT = 900
BUILD_TIMEOUT = 1200
IP_LOOKUP_TIMEOUT = 15
HTTP_VERIFY_RETRIES = 6
HTTP_VERIFY_DELAY = 5

GZIP_MIN_LENGTH = 1024
GZIP_TYPES = [
    "text/plain",
    "text/css",
    "text/xml",
    "text/javascript",
    "application/x-javascript",
    "application/xml+rss",
    "application/javascript",
    "application/json",
]
STATIC_EXTENSIONS = [
    "js", "css", "png", "jpg", "jpeg", "gif", "ico", "svg", "woff", "woff2", "ttf", "eot",
]
STATIC_CACHE_EXPIRES = "1y"
SECURITY_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
}

# nginx drops server-level add_header directives inside a location that sets
# its own, so the security headers are repeated in the static asset block.
SERVER_BLOCK_TEMPLATE = dedent("""
    server {{
        listen 80;
        listen [::]:80;

        server_name {server_name} _;

        root {document_root};
        index index.html;

        # Enable gzip compression
        gzip on;
        gzip_vary on;
        gzip_min_length {gzip_min_length};
        gzip_types {gzip_types};

        location / {{
            try_files $uri $uri/ /index.html;
        }}

        # Cache static assets
        location ~* \\.({extensions})$ {{
            expires {expires};
            add_header Cache-Control "public, immutable";
            {location_headers}
        }}

        # Security headers
        {server_headers}
    }}
""").strip()

INDEX_CSS = dedent("""
    * {
      margin: 0;
      padding: 0;
      box-sizing: border-box;
    }

    body {
      margin: 0;
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Roboto', 'Oxygen',
        'Ubuntu', 'Cantarell', 'Fira Sans', 'Droid Sans', 'Helvetica Neue',
        sans-serif;
      -webkit-font-smoothing: antialiased;
      -moz-osx-font-smoothing: grayscale;
    }

    #root {
      min-height: 100vh;
    }
""").lstrip()


def log(msg: str):
    print(f"[green][INFO][/green] {escape(msg)}")


def success(msg: str):
    print(f"[green][OK][/green] {escape(msg)}")


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {escape(msg)}")


def error(msg: str):
    print(f"[red][ERROR][/red] {escape(msg)}")
    sys.exit(1)


class SetupError(Exception):
    """Base for every failure that aborts a provisioning run."""


class CommandError(SetupError):
    def __init__(self, cmd: str, returncode: int | None, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        status = "timed out" if returncode is None else f"exit {returncode}"
        super().__init__(f"Command failed ({status}): {cmd}\n{self.stderr}".rstrip())


class PreconditionError(SetupError):
    pass


class InstallError(SetupError):
    pass


class WorkspaceError(SetupError):
    pass


class BuildError(SetupError):
    pass


class DeployError(SetupError):
    pass


class ConfigError(SetupError):
    pass


class SystemCommandRunner(Protocol):
    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        cwd: str | None = None,
        timeout: int = COMMAND_TIMEOUT,
        check: bool = True,
    ) -> str:
        """:return: stripped stdout; raises ``CommandError`` on failure when ``check``"""
        ...

    def probe(self, command: str) -> bool:
        """Read-only: True if ``command`` is on the PATH."""
        ...

    def install(self, packages: list[str]) -> None: ...

    def service_control(self, action: str, service: str) -> None: ...

    def write_file(self, path: str, content: str, *, sudo: bool = False) -> None: ...

    def exists(self, path: str) -> bool: ...


class ShellRunner:
    """Implements ``SystemCommandRunner`` on top of a single ``_exec`` primitive."""

    def _exec(
        self, cmd: str, timeout: int, stdin: str | None = None
    ) -> tuple[int | None, str, str]:
        """:return: (returncode, stdout, stderr), returncode is None on timeout"""
        raise NotImplementedError

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        cwd: str | None = None,
        timeout: int = COMMAND_TIMEOUT,
        check: bool = True,
        display: str | None = None,
        stdin: str | None = None,
    ) -> str:
        full = cmd
        if cwd:
            full = f"cd {shlex.quote(cwd)} && {full}"
        if sudo:
            full = f"sudo bash -c {shlex.quote(full)}"
        returncode, stdout, stderr = self._exec(full, timeout, stdin=stdin)
        if check and returncode != 0:
            raise CommandError(display or cmd, returncode, stderr or stdout)
        return stdout.strip()

    def probe(self, command: str) -> bool:
        returncode, _, _ = self._exec(f"command -v {shlex.quote(command)}", COMMAND_TIMEOUT)
        return returncode == 0

    def exists(self, path: str) -> bool:
        returncode, _, _ = self._exec(f"test -e {shlex.quote(path)}", COMMAND_TIMEOUT)
        return returncode == 0

    def install(self, packages: list[str]):
        self.run(
            f"DEBIAN_FRONTEND=noninteractive apt-get install -y -qq {' '.join(packages)}",
            sudo=True,
            timeout=INSTALL_TIMEOUT,
        )

    def service_control(self, action: str, service: str):
        self.run(f"systemctl {action} {service}", sudo=True)

    def write_file(self, path: str, content: str, *, sudo: bool = False):
        """Uses base64 encoding to avoid heredoc and escaping issues.

        The payload goes over stdin, so file size is not bounded by the
        kernel's per-argument limit.
        """
        encoded = base64.b64encode(content.encode()).decode()
        self.run(
            f"base64 -d > {shlex.quote(path)}",
            sudo=sudo,
            display=f"write {path}",
            stdin=encoded,
        )


class LocalRunner(ShellRunner):
    def _exec(
        self, cmd: str, timeout: int, stdin: str | None = None
    ) -> tuple[int | None, str, str]:
        try:
            result = subprocess.run(
                ["bash", "-c", cmd],
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return None, "", f"timed out after {timeout}s"
        except OSError as exc:
            # 126 is the shell's "cannot execute" status
            return 126, "", str(exc)
        return result.returncode, result.stdout, result.stderr


class SSHRunner(ShellRunner):
    def __init__(self, host: str, user: str = "ubuntu"):
        self.host = host
        self.user = user

    def _exec(
        self, cmd: str, timeout: int, stdin: str | None = None
    ) -> tuple[int | None, str, str]:
        in_stream = io.StringIO(stdin) if stdin is not None else False
        with Connection(
            self.host, user=self.user, connect_kwargs={"look_for_keys": True}
        ) as c:
            try:
                result = c.run(
                    cmd, hide=True, warn=True, timeout=timeout, in_stream=in_stream
                )
            except CommandTimedOut:
                return None, "", f"timed out after {timeout}s"
            return result.return_code, result.stdout, result.stderr


def get_runner(host: str | None = None, ssh_user: str = "ubuntu") -> ShellRunner:
    if host:
        return SSHRunner(host, user=ssh_user)
    return LocalRunner()


def home_dir(runner: SystemCommandRunner) -> str:
    home = runner.run('printf "%s" "$HOME"')
    if not home:
        raise PreconditionError("Could not determine the home directory on the host")
    return home


@dataclass
class Settings:
    app_name: str = DEFAULT_APP_NAME
    document_root: str = DOCUMENT_ROOT
    sites_available: str = SITES_AVAILABLE
    sites_enabled: str = SITES_ENABLED
    web_user: str = WEB_USER
    web_group: str = WEB_USER
    web_mode: str = WEB_MODE
    node_version: int = NODE_VERSION
    extra_dependency: str = EXTRA_DEPENDENCY
    vite_template: str = VITE_TEMPLATE
    ip_lookup_url: str = IP_LOOKUP_URL

    @property
    def site_path(self) -> str:
        return f"{self.sites_available}/{self.app_name}"

    @property
    def enabled_path(self) -> str:
        return f"{self.sites_enabled}/{self.app_name}"

    @property
    def target(self) -> "DeploymentTarget":
        return DeploymentTarget(
            document_root=self.document_root,
            owner=self.web_user,
            group=self.web_group,
            mode=self.web_mode,
        )


@dataclass(frozen=True)
class Authorization:
    """Operator consent for one run. Every mutating step takes it explicitly."""

    user: str
    uid: int
    granted_at: datetime


def require_authorization(auth) -> Authorization:
    if not isinstance(auth, Authorization):
        raise PreconditionError("Refusing to change host state without operator confirmation")
    return auth


def authorize(
    runner: SystemCommandRunner,
    settings: Settings,
    *,
    confirm: Callable[[str], str] = input,
) -> Authorization:
    """Refuses root, then asks the operator before anything is changed."""
    uid = int(runner.run("id -u"))
    user = runner.run("id -un")
    if uid == 0:
        raise PreconditionError(
            "Please do not run this as root. Run as the ubuntu user (sudo is used where needed)."
        )

    print("This will install and configure:")
    print(f"  - Node.js {settings.node_version}.x")
    print("  - Nginx web server")
    print(f"  - {settings.app_name}, served from {settings.document_root}")
    try:
        reply = confirm("Continue? (y/n) ")
    except EOFError:
        reply = ""
    if reply.strip().lower() not in ("y", "yes"):
        raise PreconditionError("Cancelled, nothing was changed")
    return Authorization(user=user, uid=uid, granted_at=datetime.now(timezone.utc))


@dataclass(frozen=True)
class Capability:
    name: str
    label: str
    command: str
    packages: tuple[str, ...]
    version_command: str
    setup_commands: tuple[str, ...] = ()
    service: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    name: str
    present: bool
    version: str | None = None


def default_capabilities(node_version: int = NODE_VERSION) -> list[Capability]:
    return [
        Capability(
            name="runtime",
            label=f"Node.js {node_version}.x",
            command="node",
            packages=("nodejs",),
            version_command="node --version",
            setup_commands=(
                "set -o pipefail; "
                f"curl -fsSL https://deb.nodesource.com/setup_{node_version}.x | bash -",
            ),
        ),
        Capability(
            name="web-server",
            label="Nginx",
            command="nginx",
            packages=("nginx",),
            version_command="nginx -v",
            service="nginx",
        ),
        Capability(
            name="version-control",
            label="git",
            command="git",
            packages=("git",),
            version_command="git --version",
        ),
    ]


def probe(runner: SystemCommandRunner, capability: Capability) -> ProbeResult:
    """Never changes the host and never raises: a failing check means absent."""
    if not runner.probe(capability.command):
        return ProbeResult(capability.name, present=False)
    # nginx -v writes to stderr
    output = runner.run(f"{capability.version_command} 2>&1", check=False).splitlines()
    return ProbeResult(capability.name, present=True, version=output[0] if output else None)


class Installer:
    """Installs missing capabilities. The package index is refreshed at most once."""

    def __init__(self, runner: SystemCommandRunner):
        self.runner = runner
        self._index_updated = False

    def _update_index(self):
        if self._index_updated:
            return
        log("Updating package index...")
        self.runner.run(
            "DEBIAN_FRONTEND=noninteractive apt-get update -qq",
            sudo=True,
            timeout=INSTALL_TIMEOUT,
        )
        self._index_updated = True

    def _install_with_retry(self, capability: Capability):
        try:
            self.runner.install(list(capability.packages))
        except CommandError as exc:
            warn(f"Installing {capability.label} failed ({exc.returncode}), retrying once...")
            self.runner.install(list(capability.packages))

    def upgrade(self, auth: Authorization):
        require_authorization(auth)
        try:
            self._update_index()
            log("Upgrading system packages...")
            self.runner.run(
                "DEBIAN_FRONTEND=noninteractive apt-get upgrade -y -qq",
                sudo=True,
                timeout=INSTALL_TIMEOUT,
            )
        except CommandError as exc:
            raise InstallError(f"System upgrade failed: {exc}") from exc

    def ensure(self, auth: Authorization, capability: Capability) -> ProbeResult:
        require_authorization(auth)
        found = probe(self.runner, capability)
        if found.present:
            success(f"{capability.label} already installed ({found.version or 'unknown version'})")
            return found

        log(f"Installing {capability.label}...")
        try:
            self._update_index()
            for cmd in capability.setup_commands:
                self.runner.run(cmd, sudo=True, timeout=INSTALL_TIMEOUT)
            self._install_with_retry(capability)
            if capability.service:
                self.runner.service_control("start", capability.service)
                self.runner.service_control("enable", capability.service)
        except CommandError as exc:
            raise InstallError(f"Failed to install {capability.label}: {exc}") from exc

        found = probe(self.runner, capability)
        if not found.present:
            raise InstallError(
                f"{capability.label} still missing after install ('{capability.command}' not on PATH)"
            )
        success(f"{capability.label} installed ({found.version or 'unknown version'})")
        return found


WorkspaceState = Literal["absent", "existing", "backed-up", "fresh"]


@dataclass
class Workspace:
    path: str
    state: WorkspaceState = "absent"
    backup: str | None = None


def _free_backup_path(
    runner: SystemCommandRunner, path: str, clock: Callable[[], float]
) -> str:
    stamp = int(clock())
    while runner.exists(f"{path}.backup.{stamp}"):
        stamp += 1
    return f"{path}.backup.{stamp}"


def prepare_workspace(
    auth: Authorization,
    runner: SystemCommandRunner,
    path: str,
    *,
    clock: Callable[[], float] = time.time,
) -> Workspace:
    """Moves any previous workspace aside (never deletes it) and creates an empty one."""
    require_authorization(auth)
    workspace = Workspace(path)
    try:
        if runner.exists(path):
            workspace.state = "existing"
            backup = _free_backup_path(runner, path, clock)
            warn(f"Project directory already exists. Backing up to {backup}")
            runner.run(f"mv -T {shlex.quote(path)} {shlex.quote(backup)}")
            workspace.state = "backed-up"
            workspace.backup = backup
        runner.run(f"mkdir -p {shlex.quote(path)}")
    except CommandError as exc:
        raise WorkspaceError(f"Could not prepare workspace {path}: {exc}") from exc
    workspace.state = "fresh"
    success(f"Workspace ready at {path}")
    return workspace


def list_backups(runner: SystemCommandRunner, path: str) -> list[str]:
    """:return: backup directories of ``path``, oldest first"""
    output = runner.run(f"ls -1d {shlex.quote(path)}.backup.* 2>/dev/null", check=False)
    backups = [line for line in output.splitlines() if line.strip()]

    def stamp(backup: str) -> int:
        suffix = backup.rsplit(".", 1)[-1]
        return int(suffix) if suffix.isdigit() else 0

    return sorted(backups, key=stamp)


@dataclass(frozen=True)
class BuildArtifact:
    source_dir: str
    output_dir: str
    built_at: datetime


def build(
    auth: Authorization,
    runner: SystemCommandRunner,
    workspace: Workspace,
    settings: Settings,
    *,
    app_source: str | None = None,
) -> BuildArtifact:
    """Scaffold, install, inject assets and build. Any failing step aborts.

    :param app_source: contents for ``src/App.jsx``; the scaffold's own
        component is kept when None
    """
    require_authorization(auth)
    if workspace.state != "fresh":
        raise BuildError(f"Workspace {workspace.path} is not fresh (state: {workspace.state})")
    cwd = workspace.path
    steps = [
        (
            "Creating React application...",
            f"npm create vite@latest . -- --template {settings.vite_template} --yes",
        ),
        ("Installing dependencies (this may take a minute)...", "npm install"),
        (f"Installing {settings.extra_dependency}...", f"npm install {settings.extra_dependency}"),
    ]
    try:
        for message, cmd in steps:
            log(message)
            runner.run(cmd, cwd=cwd, timeout=BUILD_TIMEOUT)
        success("Dependencies installed")

        log("Creating index.css...")
        runner.write_file(f"{cwd}/src/index.css", INDEX_CSS)
        if app_source is not None:
            log("Writing src/App.jsx...")
            runner.write_file(f"{cwd}/src/App.jsx", app_source)
        else:
            warn("No --app-source given, deploying the scaffold's default App.jsx")

        log("Building production bundle...")
        runner.run("npm run build", cwd=cwd, timeout=BUILD_TIMEOUT)
    except CommandError as exc:
        raise BuildError(f"Build failed: {exc}") from exc

    output_dir = f"{cwd}/dist"
    if not runner.exists(f"{output_dir}/index.html"):
        raise BuildError(f"Build failed - no {output_dir}/index.html")
    success(f"Production bundle ready in {output_dir}")
    return BuildArtifact(
        source_dir=cwd, output_dir=output_dir, built_at=datetime.now(timezone.utc)
    )


@dataclass(frozen=True)
class DeploymentTarget:
    document_root: str = DOCUMENT_ROOT
    owner: str = WEB_USER
    group: str = WEB_USER
    mode: str = WEB_MODE


class ArtifactDeployer:
    """Replaces the document root with a build.

    The build is copied into a sibling staging directory, ownership and mode
    are reset there, and only then is it renamed over the live root. A
    failure while staging leaves the live root as it was.
    """

    def __init__(self, runner: SystemCommandRunner, clock: Callable[[], float] = time.time):
        self.runner = runner
        self.clock = clock
        self._deployed: set[BuildArtifact] = set()

    def _stage(self, artifact: BuildArtifact, target: DeploymentTarget, staging: str):
        q = shlex.quote
        self.runner.run(f"mkdir -p {q(staging)}", sudo=True)
        self.runner.run(f"cp -a {q(artifact.output_dir)}/. {q(staging)}/", sudo=True)
        self.runner.run(f"chown -R {target.owner}:{target.group} {q(staging)}", sudo=True)
        self.runner.run(f"chmod -R {target.mode} {q(staging)}", sudo=True)

    def _swap(self, root: str, staging: str, previous: str):
        q = shlex.quote
        if not self.runner.exists(root):
            self.runner.run(f"mv -T {q(staging)} {q(root)}", sudo=True)
            return
        try:
            self.runner.run(
                f"mv -T {q(root)} {q(previous)} && mv -T {q(staging)} {q(root)}", sudo=True
            )
        except CommandError:
            if self.runner.exists(previous) and not self.runner.exists(root):
                self.runner.run(f"mv -T {q(previous)} {q(root)}", sudo=True)
            raise

    def deploy(self, auth: Authorization, artifact: BuildArtifact, target: DeploymentTarget):
        require_authorization(auth)
        if artifact in self._deployed:
            raise DeployError(f"Build in {artifact.output_dir} was already deployed")

        stamp = int(self.clock())
        root = target.document_root
        staging = f"{root}.staging.{stamp}"
        previous = f"{root}.previous.{stamp}"

        log(f"Staging build in {staging}...")
        try:
            self._stage(artifact, target, staging)
        except CommandError as exc:
            self.runner.run(f"rm -rf {shlex.quote(staging)}", sudo=True, check=False)
            raise DeployError(f"Failed to stage build: {exc}") from exc

        log(f"Swapping build into {root}...")
        try:
            self._swap(root, staging, previous)
        except CommandError as exc:
            raise DeployError(f"Failed to swap build into {root}: {exc}") from exc
        try:
            self.runner.run(f"rm -rf {shlex.quote(previous)}", sudo=True)
        except CommandError as exc:
            warn(f"Build is live but {previous} could not be removed: {exc.stderr or exc}")
        self._deployed.add(artifact)
        success(f"Deployed to {root} ({target.owner}:{target.group}, mode {target.mode})")


def discover_public_ip(runner: SystemCommandRunner, url: str = IP_LOOKUP_URL) -> str:
    """Asks an external service for the host's public address. No fallback."""
    log("Detecting public IP address...")
    try:
        answer = runner.run(
            f"curl -fsS --max-time {IP_LOOKUP_TIMEOUT} {shlex.quote(url)}",
            timeout=IP_LOOKUP_TIMEOUT + 5,
        )
    except CommandError as exc:
        raise ConfigError(f"Could not determine public IP from {url}: {exc}") from exc
    if not answer:
        raise ConfigError(f"Empty response from {url}, refusing to render a config without a server name")
    try:
        ipaddress.ip_address(answer)
    except ValueError:
        raise ConfigError(f"Unexpected response from {url}: {answer!r}") from None
    success(f"Public IP: {answer}")
    return answer


def format_server_name(address: str) -> str:
    """IPv6 literals need brackets in ``server_name``."""
    try:
        if ipaddress.ip_address(address).version == 6:
            return f"[{address}]"
    except ValueError:
        pass
    return address


def render_server_config(server_name: str, document_root: str = DOCUMENT_ROOT) -> str:
    """Renders the nginx server block. Only ``server_name`` and ``_`` are accepted."""
    header_lines = [
        f'add_header {name} "{value}" always;' for name, value in SECURITY_HEADERS.items()
    ]
    return SERVER_BLOCK_TEMPLATE.format(
        server_name=format_server_name(server_name),
        document_root=document_root,
        gzip_min_length=GZIP_MIN_LENGTH,
        gzip_types=" ".join(GZIP_TYPES),
        extensions="|".join(STATIC_EXTENSIONS),
        expires=STATIC_CACHE_EXPIRES,
        location_headers="\n        ".join(header_lines),
        server_headers="\n    ".join(header_lines),
    ) + "\n"


def install_site(
    auth: Authorization,
    runner: SystemCommandRunner,
    settings: Settings,
    config_text: str,
) -> str:
    """Writes the site and makes it the only enabled one.

    :return: path of the written site definition
    """
    require_authorization(auth)
    q = shlex.quote
    log(f"Writing {settings.site_path}...")
    try:
        runner.write_file(settings.site_path, config_text, sudo=True)
        listing = runner.run(
            f"find {q(settings.sites_enabled)} -mindepth 1 -maxdepth 1 -printf '%y %f\\n'",
            sudo=True,
        )
        for line in listing.splitlines():
            kind, _, name = line.partition(" ")
            if not name or name == settings.app_name:
                continue
            if kind == "l" or name == "default":
                log(f"Disabling site '{name}'")
                runner.run(f"rm -f {q(settings.sites_enabled + '/' + name)}", sudo=True)
            else:
                warn(f"{settings.sites_enabled}/{name} is not a symlink, leaving it in place")
        runner.run(f"ln -sfn {q(settings.site_path)} {q(settings.enabled_path)}", sudo=True)
    except CommandError as exc:
        raise ConfigError(f"Could not install nginx site {settings.app_name}: {exc}") from exc
    success(f"Site '{settings.app_name}' enabled")
    return settings.site_path


def activate(auth: Authorization, runner: SystemCommandRunner, service: str = "nginx"):
    """Restarts nginx only after ``nginx -t`` accepts the configuration."""
    require_authorization(auth)
    log("Testing Nginx configuration...")
    try:
        runner.run("nginx -t", sudo=True)
    except CommandError as exc:
        raise ConfigError(
            f"nginx rejected the configuration, {service} was not restarted:\n{exc.stderr}"
        ) from exc
    success("Nginx configuration OK")

    log("Restarting Nginx...")
    try:
        runner.service_control("restart", service)
    except CommandError as exc:
        raise ConfigError(f"Failed to restart {service}: {exc}") from exc


def http_status(runner: SystemCommandRunner, url: str) -> str:
    return runner.run(
        f"curl -s -o /dev/null -w '%{{http_code}}' --max-time 5 {shlex.quote(url)}",
        check=False,
    )


def verify_http(runner: SystemCommandRunner, url: str = "http://localhost/") -> bool:
    log("Verifying HTTP connectivity on port 80...")
    for i in range(HTTP_VERIFY_RETRIES):
        status = http_status(runner, url)
        if status[:1] in ("2", "3"):
            success(f"HTTP {status} from {url}")
            return True
        warn(f"Cannot connect to {url} ({i + 1}/{HTTP_VERIFY_RETRIES})")
        time.sleep(HTTP_VERIFY_DELAY)
    return False


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address using specified nameserver.

    :param domain: Domain name to resolve
    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP address, or None if resolution fails
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def check_domain(domain: str, expected_ip: str) -> bool:
    """:return: True if ``domain`` already points at ``expected_ip``"""
    current_ip = resolve_dns_a(domain)
    if current_ip == expected_ip:
        success(f"DNS: {domain} -> {expected_ip}")
        return True
    warn(
        f"DNS: {domain} points to {current_ip or 'nothing'}, expected {expected_ip}. "
        "Add an A record before enabling HTTPS."
    )
    return False


@dataclass
class DeployReport:
    public_ip: str
    workspace: Workspace
    artifact: BuildArtifact
    site_path: str
    http_ok: bool = True
    dns_ok: bool | None = None
    capabilities: list[ProbeResult] = field(default_factory=list)


def run_setup(
    runner: SystemCommandRunner,
    settings: Settings,
    *,
    confirm: Callable[[str], str] = input,
    app_source: str | None = None,
    upgrade: bool = False,
    domain: str | None = None,
) -> DeployReport:
    """Guard, install, build, deploy, configure, validate, restart. Stops at the first failure."""
    auth = authorize(runner, settings, confirm=confirm)
    print("=" * 50)

    installer = Installer(runner)
    if upgrade:
        installer.upgrade(auth)
    capabilities = [
        installer.ensure(auth, capability)
        for capability in default_capabilities(settings.node_version)
    ]

    log("Setting up project directory...")
    workspace = prepare_workspace(auth, runner, f"{home_dir(runner)}/{settings.app_name}")
    artifact = build(auth, runner, workspace, settings, app_source=app_source)

    log("Deploying to Nginx...")
    ArtifactDeployer(runner).deploy(auth, artifact, settings.target)

    log("Configuring Nginx...")
    public_ip = discover_public_ip(runner, settings.ip_lookup_url)
    site_path = install_site(
        auth, runner, settings, render_server_config(public_ip, settings.document_root)
    )
    activate(auth, runner)

    report = DeployReport(
        public_ip=public_ip,
        workspace=workspace,
        artifact=artifact,
        site_path=site_path,
        capabilities=capabilities,
    )
    report.http_ok = verify_http(runner)
    if not report.http_ok:
        warn("Nginx restarted but http://localhost/ is not answering yet")
    if domain:
        report.dns_ok = check_domain(domain, public_ip)
    return report


def print_summary(report: DeployReport, settings: Settings):
    url = f"http://{format_server_name(report.public_ip)}"
    print("")
    print("=" * 50)
    success("Setup completed successfully!")
    print("=" * 50)
    print("")
    print("Your application is now available at:")
    print(f"  [green]{url}[/green]")
    if report.workspace.backup:
        print(f"Previous workspace kept at {report.workspace.backup}")
    print("")
    print("Next steps:")
    print("  1. Visit the URL above to test your application")
    print(f"  2. (Optional) Set up a domain name and point it to {report.public_ip}")
    print("  3. (Optional) Enable HTTPS with: sudo certbot --nginx -d yourdomain.com")
    print("")
    print("To update your application in the future:")
    print("  1. Make changes to your App.jsx")
    print(f"  2. Run: uv run lightsail-deploy --app-name {settings.app_name} --app-source App.jsx")
    print("     (the current workspace is kept as a backup and the build is swapped in)")
    print("")
    print("Useful commands:")
    print("  - View logs: sudo tail -f /var/log/nginx/error.log")
    print("  - Restart Nginx: sudo systemctl restart nginx")
    print("  - Check status: uv run lightsail-deploy verify")
    print(f"  - List workspace backups: uv run lightsail-deploy backups --app-name {settings.app_name}")


def check_health(
    runner: SystemCommandRunner, settings: Settings, *, domain: str | None = None
) -> list[str]:
    """Prints one line per check. :return: list of issues, empty if healthy"""
    issues = []

    nginx_state = runner.run("systemctl is-active nginx", check=False) or "inactive"
    if nginx_state == "active":
        print("[OK] Nginx: running")
    else:
        print(f"[FAIL] Nginx: {nginx_state}")
        issues.append("Nginx not running")

    try:
        runner.run("nginx -t", sudo=True)
        print("[OK] Nginx config: valid")
    except CommandError as e:
        print(f"[FAIL] Nginx config: {escape(e.stderr.splitlines()[-1] if e.stderr else str(e))}")
        issues.append("Nginx config test failed")

    enabled = runner.run(
        f"find {shlex.quote(settings.sites_enabled)} -mindepth 1 -maxdepth 1 -printf '%f\\n'",
        check=False,
    ).split()
    target = runner.run(f"readlink {shlex.quote(settings.enabled_path)}", check=False)
    if target == settings.site_path and enabled == [settings.app_name]:
        print(f"[OK] Site: only '{settings.app_name}' enabled")
    elif target == settings.site_path:
        others = ", ".join(name for name in enabled if name != settings.app_name)
        print(f"[FAIL] Site: other sites enabled ({others})")
        issues.append(f"Other sites enabled: {others}")
    else:
        print(f"[FAIL] Site: '{settings.app_name}' not enabled")
        issues.append("Site not enabled")

    if runner.exists(f"{settings.document_root}/index.html"):
        print(f"[OK] Document root: {settings.document_root}/index.html present")
    else:
        print(f"[FAIL] Document root: no index.html in {settings.document_root}")
        issues.append("Document root has no index.html")

    status = http_status(runner, "http://localhost/")
    if status[:1] in ("2", "3"):
        print(f"[OK] HTTP: {status}")
    else:
        print(f"[FAIL] HTTP: {status or 'no response'}")
        issues.append("HTTP not responding")

    if domain:
        try:
            public_ip = discover_public_ip(runner, settings.ip_lookup_url)
        except ConfigError as e:
            print(f"[FAIL] Public IP: {escape(str(e))}")
            issues.append("Public IP lookup failed")
        else:
            dns_ip = resolve_dns_a(domain)
            if dns_ip == public_ip:
                print(f"[OK] DNS: {domain} -> {public_ip}")
            else:
                print(f"[FAIL] DNS: {domain} -> {dns_ip or 'no A record'} (expected {public_ip})")
                issues.append(f"DNS mismatch: {dns_ip} != {public_ip}")

    return issues


@app.default
def setup(
    *,
    app_name: str = DEFAULT_APP_NAME,
    host: str | None = None,
    ssh_user: str = "ubuntu",
    app_source: Path | None = None,
    node_version: int = NODE_VERSION,
    upgrade: bool = False,
    domain: str | None = None,
):
    """Install Node.js, nginx and git if missing, build the app and serve it.

    :param app_name: Project name (workspace ~/<app_name>, nginx site name)
    :param host: Provision this host over SSH instead of the local machine
    :param ssh_user: SSH user for --host (must not be root)
    :param app_source: Local .jsx file to use as src/App.jsx
    :param node_version: Node.js major version to install (e.g., 20, 22)
    :param upgrade: Run apt-get upgrade before installing
    :param domain: Domain expected to point at this host (checked, not configured)
    """
    source_text = None
    if app_source is not None:
        if not app_source.exists():
            error(f"App source not found: {app_source}")
        source_text = app_source.read_text()

    print("=" * 50)
    print("Lightsail Static Site Setup")
    print("=" * 50)
    runner = get_runner(host, ssh_user)
    settings = Settings(app_name=app_name, node_version=node_version)
    try:
        report = run_setup(
            runner,
            settings,
            confirm=input,
            app_source=source_text,
            upgrade=upgrade,
            domain=domain,
        )
    except SetupError as e:
        error(str(e))
    print_summary(report, settings)


@app.command(name="verify")
def verify(
    *,
    app_name: str = DEFAULT_APP_NAME,
    host: str | None = None,
    ssh_user: str = "ubuntu",
    domain: str | None = None,
):
    """Check nginx, the enabled site, the document root and HTTP.

    :param app_name: Project name used when the site was set up
    :param host: Check this host over SSH instead of the local machine
    :param ssh_user: SSH user for --host
    :param domain: Also check that this domain resolves to the host
    """
    runner = get_runner(host, ssh_user)
    print("-" * 40)
    issues = check_health(runner, Settings(app_name=app_name), domain=domain)
    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)
    print("All checks passed!")


@app.command(name="backups")
def backups(*, app_name: str = DEFAULT_APP_NAME, host: str | None = None, ssh_user: str = "ubuntu"):
    """List workspace backups left by previous runs.

    :param app_name: Project name used when the site was set up
    :param host: List backups on this host over SSH
    :param ssh_user: SSH user for --host
    """
    runner = get_runner(host, ssh_user)
    workspace = f"{home_dir(runner)}/{app_name}"
    found = list_backups(runner, workspace)
    if not found:
        print(f"No backups of {workspace}")
        return
    print(f"Backups of {workspace}:")
    for backup in found:
        stamp = backup.rsplit(".", 1)[-1]
        when = (
            datetime.fromtimestamp(int(stamp)).strftime("%Y-%m-%d %H:%M:%S")
            if stamp.isdigit()
            else "?"
        )
        print(f"  - {backup} ({when})")


if __name__ == "__main__":
    app()
