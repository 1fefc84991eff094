import fnmatch
import shlex
from datetime import datetime, timezone

import pytest

import lightsail_deploy as ld

PACKAGE_COMMANDS = {"nodejs": "node", "nginx": "nginx", "git": "git"}
VERSIONS = {
    "node": "v20.11.1",
    "nginx": "nginx version: nginx/1.24.0 (Ubuntu)",
    "git": "git version 2.43.0",
}


class FakeHost(ld.ShellRunner):
    """A pretend Ubuntu host. Records every command instead of running it."""

    def __init__(
        self,
        *,
        installed=(),
        uid=1000,
        user="ubuntu",
        home="/home/ubuntu",
        public_ip="203.0.113.10",
    ):
        self.installed = set(installed)
        self.uid = uid
        self.user = user
        self.home = home
        self.public_ip = public_ip
        self.paths = {
            "/var/www/html",
            "/var/www/html/index.nginx-debian.html",
            "/etc/nginx/sites-available/default",
        }
        self.files = {}
        self.enabled = {"default": "l"}
        self.links = {"/etc/nginx/sites-enabled/default": "/etc/nginx/sites-available/default"}
        self.active = set()
        self.nginx_config_ok = True
        self.http_code = "200"
        self.commands = []
        self.failures = {}

    def fail_on(self, fragment, times=1000):
        self.failures[fragment] = times

    def ran(self, fragment):
        return [cmd for cmd in self.commands if fragment in cmd]

    def write_file(self, path, content, *, sudo=False):
        self.commands.append(f"write {path}")
        self.files[path] = content
        self.paths.add(path)

    def _exec(self, cmd, timeout, stdin=None):
        if cmd.startswith("sudo bash -c "):
            cmd = shlex.split(cmd)[3]
        cwd = None
        if cmd.startswith("cd "):
            prefix, _, cmd = cmd.partition(" && ")
            cwd = shlex.split(prefix)[1]
        self.commands.append(cmd)
        for fragment, remaining in self.failures.items():
            if fragment in cmd and remaining > 0:
                self.failures[fragment] = remaining - 1
                return 1, "", f"simulated failure: {fragment}"
        result = (0, "", "")
        for part in cmd.split(" && "):
            result = self._simulate(part, cwd)
            if result[0] != 0:
                break
        return result

    def _move(self, src, dst):
        if src not in self.paths or dst in self.paths:
            return 1, "", f"mv: cannot move '{src}' to '{dst}'"
        moved = {p for p in self.paths if p == src or p.startswith(src + "/")}
        self.paths -= moved
        self.paths |= {dst + p[len(src):] for p in moved}
        return 0, "", ""

    def _remove(self, path):
        self.paths = {p for p in self.paths if p != path and not p.startswith(path + "/")}

    def _simulate(self, cmd, cwd):
        argv = shlex.split(cmd.split(" 2>")[0])
        while argv and "=" in argv[0]:
            argv.pop(0)
        name, args = argv[0], argv[1:]

        if name == "id":
            return 0, str(self.uid) if args == ["-u"] else self.user, ""
        if name == "printf":
            return 0, self.home, ""
        if name == "command":
            return (0, f"/usr/bin/{args[1]}", "") if args[1] in self.installed else (1, "", "")
        if name == "test":
            return (0, "", "") if args[1] in self.paths else (1, "", "")
        if name in VERSIONS and args in (["--version"], ["-v"]):
            return 0, VERSIONS[name], ""
        if name == "apt-get":
            if args[0] == "install":
                for package in args[1:]:
                    if not package.startswith("-"):
                        self.installed.add(PACKAGE_COMMANDS.get(package, package))
            return 0, "", ""
        if name == "curl":
            if "ifconfig.me" in cmd:
                return 0, self.public_ip, ""
            if "http_code" in cmd:
                return 0, self.http_code, ""
            return 0, "", ""
        if name == "systemctl":
            action, service = args
            if action in ("start", "restart"):
                self.active.add(service)
            if action == "is-active":
                return (0, "active", "") if service in self.active else (3, "inactive", "")
            return 0, "", ""
        if name == "nginx":
            if self.nginx_config_ok:
                return 0, "", "nginx: configuration file /etc/nginx/nginx.conf test is successful"
            return 1, "", "nginx: [emerg] unexpected \"}\" in /etc/nginx/sites-enabled/x:12"
        if name == "mkdir":
            self.paths.add(args[-1])
            return 0, "", ""
        if name == "mv":
            return self._move(args[1], args[2])
        if name == "rm":
            target = args[1]
            if target.startswith("/etc/nginx/sites-enabled/"):
                self.enabled.pop(target.rsplit("/", 1)[1], None)
                self.links.pop(target, None)
            self._remove(target)
            return 0, "", ""
        if name == "cp":
            src, dst = args[1].rstrip("/."), args[2].rstrip("/")
            if src not in self.paths:
                return 1, "", f"cp: cannot stat '{src}'"
            self.paths |= {dst + p[len(src):] for p in self.paths if p.startswith(src + "/")}
            return 0, "", ""
        if name == "find":
            if "%y" in cmd:
                return 0, "\n".join(f"{kind} {n}" for n, kind in self.enabled.items()), ""
            return 0, "\n".join(self.enabled), ""
        if name == "ln":
            src, dst = args[1], args[2]
            self.enabled[dst.rsplit("/", 1)[1]] = "l"
            self.links[dst] = src
            return 0, "", ""
        if name == "readlink":
            return (0, self.links[args[0]], "") if args[0] in self.links else (1, "", "")
        if name == "npm":
            if args[0] == "create":
                self.paths |= {f"{cwd}/package.json", f"{cwd}/src", f"{cwd}/src/App.jsx"}
            elif args[:2] == ["run", "build"]:
                self.paths |= {f"{cwd}/dist", f"{cwd}/dist/index.html", f"{cwd}/dist/assets"}
            return 0, "", ""
        if name == "ls":
            pattern = args[1]
            matches = sorted(
                p for p in self.paths
                if fnmatch.fnmatch(p, pattern) and p.count("/") == pattern.count("/")
            )
            return 0, "\n".join(matches), ""
        return 0, "", ""


MUTATING = ("apt-get", "systemctl start", "systemctl enable", "systemctl restart", "setup_")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def auth():
    return ld.Authorization(user="ubuntu", uid=1000, granted_at=datetime.now(timezone.utc))


@pytest.fixture
def settings():
    return ld.Settings()


@pytest.fixture(autouse=True)
def no_http_delay(monkeypatch):
    monkeypatch.setattr(ld, "HTTP_VERIFY_DELAY", 0)
