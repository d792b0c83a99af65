"""netdiscard — cut Docker off from the network on a CI runner.

Points dockerd's HTTP(S) proxy at localhost:9 and backs that port with the
inetd discard service, so image pulls fail fast instead of timing out while
the daemon itself still starts.  Safe to re-run: nothing is written or
restarted once the host has converged.
"""

import argparse
import os
import re
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# ── Constants ────────────────────────────────────────────────────────────────

PACKAGE_DIR = Path(__file__).resolve().parent

DISCARD_CONF = PACKAGE_DIR / "discard-port.conf"
DROPIN_TEMPLATE = PACKAGE_DIR / "dockerd.service"

INETD_PACKAGE = "openbsd-inetd"
INETD_CONF = Path("/etc/inetd.conf")
INETD_ALIASES = ("inetd", "openbsd-inetd")

DOCKER_SERVICE = "docker"
DROPIN_DIR = Path("/etc/systemd/system/docker.service.d")
DROPIN_NAME = "http-proxy.conf"
DROPIN_DIR_MODE = "0755"

DISCARD_TCP_RE = re.compile(r"^\s*discard\s+stream\s+tcp")
DISCARD_UDP_RE = re.compile(r"^\s*discard\s+dgram\s+udp")

DISCARD_ENTRIES = (
    ("tcp/9", DISCARD_TCP_RE),
    ("udp/9", DISCARD_UDP_RE),
)

SECTIONS = ["package", "inetd", "docker"]


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    PACKAGE  = "\uf187"   # archive
    COGS     = "\uf085"   # cogs
    CUBES    = "\uf1b3"   # cubes (containers)
    DOWNLOAD = "\uf019"   # download
    WRENCH   = "\uf0ad"   # wrench
    TOGGLE   = "\uf205"   # toggle-on
    RECYCLE  = "\uf1b8"   # recycle (restart)

SECTION_ICONS = {
    "package": _I.PACKAGE,
    "inetd":   _I.COGS,
    "docker":  _I.CUBES,
}

SECTION_LABELS = {
    "package": "inetd package",
    "inetd":   "Discard service",
    "docker":  "Docker proxy drop-in",
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _ts() -> str:
    return datetime.now(timezone.utc).strftime("%H:%M:%S")


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"[{_ts()}] {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"[{_ts()}] {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"[{_ts()}] {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"[{_ts()}] {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"[{_ts()}] {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"[{_ts()}] {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"[{_ts()}] {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── State detection ──────────────────────────────────────────────────────────

class FragmentError(ValueError):
    """The discard fragment lacks a line the host needs."""


def discard_entry_present(text: str, pattern: re.Pattern) -> bool:
    """True when any line of *text* matches *pattern*."""
    return any(pattern.match(line) for line in text.splitlines())


def fragment_line(fragment: str, pattern: re.Pattern) -> str:
    """Return the first line of *fragment* matching *pattern*."""
    for line in fragment.splitlines():
        if pattern.match(line):
            return line
    raise FragmentError(f"no line matching {pattern.pattern!r} in fragment")


def missing_discard_entries(current: str, fragment: str) -> list:
    """Return ``(label, line)`` for every discard entry absent from *current*.

    Matching is by pattern, so an equivalent line already in the file (other
    spacing, other flags after the protocol) counts as present.
    """
    missing = []
    for label, pattern in DISCARD_ENTRIES:
        if not discard_entry_present(current, pattern):
            missing.append((label, fragment_line(fragment, pattern)))
    return missing


def unit_registered(unit_files: str, unit: str) -> bool:
    """True when *unit* appears in ``systemctl list-unit-files`` output."""
    for line in unit_files.splitlines():
        parts = line.split()
        if parts and parts[0] == unit:
            return True
    return False


def resolve_service(unit_files: str, aliases=INETD_ALIASES) -> str:
    """Pick the registered name among *aliases*.

    Falls back to the last alias when none is registered yet.
    """
    for alias in aliases:
        if unit_registered(unit_files, f"{alias}.service"):
            return alias
    return aliases[-1]


def needs_write(current, template: bytes) -> bool:
    """True when *current* (None if absent) differs from *template*."""
    return current is None or current != template


def read_bytes_or_none(path: Path):
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def decode_config(data) -> str:
    """Decode file bytes (None if absent); undecodable bytes survive as-is."""
    if data is None:
        return ""
    return data.decode("utf-8", errors="surrogateescape")


# ── NetDiscard ───────────────────────────────────────────────────────────────

class NetDiscard:

    def __init__(self, dry_run: bool = False, skip_sections=(),
                 quiet: bool = False, use_sudo=None,
                 inetd_conf: Path = INETD_CONF,
                 discard_conf: Path = DISCARD_CONF,
                 dropin_template: Path = DROPIN_TEMPLATE,
                 dropin_dir: Path = DROPIN_DIR):
        self.dry_run = dry_run
        self.skip = set(skip_sections)
        self.quiet = quiet
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo
        self.inetd_conf = Path(inetd_conf)
        self.discard_conf = Path(discard_conf)
        self.dropin_template = Path(dropin_template)
        self.dropin_dir = Path(dropin_dir)
        self.dropin_file = self.dropin_dir / DROPIN_NAME

        self.inetd_changed = False
        self.dropin_changed = False
        self.changed: list = []
        self.started: list = []
        self.restarted: list = []

        self._t0 = None
        self._step = 0
        self._total = sum(1 for s in SECTIONS if s not in self.skip)

    # ── helpers ───────────────────────────────────────────────────────────

    def _privileged(self, cmd) -> list:
        return (["sudo"] if self.use_sudo else []) + list(cmd)

    def run_cmd(self, cmd, check=True, stdin_data=None):
        """Execute *cmd* with elevated privilege, or print it if --dry-run.

        *stdin_data* (bytes) is fed to the command and its stdout discarded;
        this is how files are written through ``tee``.
        """
        cmd = self._privileged(cmd)
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.quiet:
            _info(f"Running: {pretty}")
        kwargs = {}
        if stdin_data is not None:
            kwargs = {"input": stdin_data, "stdout": subprocess.DEVNULL}
        result = subprocess.run(cmd, check=check, **kwargs)
        if not check and result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def _query(self, cmd) -> subprocess.CompletedProcess:
        """Run a read-only query; a missing binary reads as failure."""
        try:
            return subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            return subprocess.CompletedProcess(cmd, 127, "", "")

    def read_file(self, path: Path):
        """Return the bytes of *path*, or None when it does not exist.

        A file the current user may not read is read through ``sudo cat``
        instead, so it is still compared rather than treated as an error.
        """
        try:
            return read_bytes_or_none(path)
        except PermissionError:
            if not self.use_sudo:
                raise
        r = subprocess.run(self._privileged(["cat", str(path)]),
                           capture_output=True, check=True)
        return r.stdout

    @staticmethod
    def _succeeded(result) -> bool:
        # run_cmd returns None in dry-run mode
        return result is None or result.returncode == 0

    def package_installed(self) -> bool:
        return self._query(["dpkg", "-s", INETD_PACKAGE]).returncode == 0

    def unit_files(self) -> str:
        return self._query(["systemctl", "list-unit-files"]).stdout or ""

    def is_active(self, service: str) -> bool:
        r = self._query(["systemctl", "is-active", "--quiet", service])
        return r.returncode == 0

    def _next_step(self, section_name: str) -> None:
        self._step += 1
        _section(
            SECTION_ICONS[section_name],
            SECTION_LABELS[section_name],
            self._step, self._total,
        )

    # ── entry point ───────────────────────────────────────────────────────

    def run(self) -> None:
        self._t0 = time.monotonic()
        mode = " (dry run)" if self.dry_run else ""
        _banner(f"{_I.ROCKET}  netdiscard{mode}")

        self.ensure_package()
        self.ensure_inetd()
        self.ensure_docker_proxy()

        self._print_summary()

    # ── Package ───────────────────────────────────────────────────────────

    def ensure_package(self) -> None:
        if "package" in self.skip:
            _skip("Skipping package section (--skip-package)")
            return

        self._next_step("package")

        if self.package_installed():
            _info(f"{INETD_PACKAGE} already installed")
            return

        _info(f"{_I.DOWNLOAD}  Installing {INETD_PACKAGE}")
        self.run_cmd(["apt-get", "update", "-y", "-qq"], check=False)
        self.run_cmd([
            "env", "DEBIAN_FRONTEND=noninteractive",
            "apt-get", "install", "-y", INETD_PACKAGE,
        ])
        self.changed.append(f"package {INETD_PACKAGE}")

    # ── inetd ─────────────────────────────────────────────────────────────

    def ensure_inetd(self) -> None:
        if "inetd" in self.skip:
            _skip("Skipping discard service section (--skip-inetd)")
            return

        self._next_step("inetd")

        fragment = self.discard_conf.read_text()
        for label, line in missing_discard_entries(
                decode_config(self.read_file(self.inetd_conf)), fragment):
            _info(f"{_I.WRENCH}  Adding discard {label} entry to {self.inetd_conf}")
            self._append_line(self.inetd_conf, line)
            self.inetd_changed = True
        if not self.inetd_changed:
            _info(f"discard tcp/9 and udp/9 already present in {self.inetd_conf}")
        else:
            self.changed.append(str(self.inetd_conf))

        service = resolve_service(self.unit_files())
        if self.is_active(service):
            _info(f"{service} already running")
        else:
            _info(f"{_I.TOGGLE}  Starting {service}")
            self.run_cmd(["systemctl", "start", service])
            self.started.append(service)

        if not self.inetd_changed:
            _info(f"No change to {self.inetd_conf}; no {service} reload needed")
            return

        _info(f"{_I.RECYCLE}  Reloading {service} due to {self.inetd_conf} changes")
        r = self.run_cmd(["systemctl", "reload", service], check=False)
        if self._succeeded(r):
            self.restarted.append(f"reload {service}")
        else:
            self.run_cmd(["systemctl", "restart", service])
            self.restarted.append(f"restart {service}")

    def _append_line(self, path: Path, line: str) -> None:
        """Append *line* to *path*, keeping the previous last line intact."""
        current = self.read_file(path)
        prefix = "\n" if current and not current.endswith(b"\n") else ""
        data = f"{prefix}{line}\n".encode("utf-8", errors="surrogateescape")
        self.run_cmd(["tee", "-a", str(path)], stdin_data=data)

    # ── Docker ────────────────────────────────────────────────────────────

    def ensure_docker_proxy(self) -> None:
        if "docker" in self.skip:
            _skip("Skipping Docker section (--skip-docker)")
            return

        self._next_step("docker")

        unit = f"{DOCKER_SERVICE}.service"
        if not unit_registered(self.unit_files(), unit):
            _skip(f"{unit} not present; skipping Docker proxy drop-in")
            return

        if not self.dropin_dir.is_dir():
            self.run_cmd(["install", "-d", "-m", DROPIN_DIR_MODE,
                          str(self.dropin_dir)])

        template = self.dropin_template.read_bytes()
        current = self.read_file(self.dropin_file)
        if not needs_write(current, template):
            _info("Docker proxy drop-in already up to date")
            _info(f"No {DOCKER_SERVICE} restart needed")
            return

        action = "Creating" if current is None else "Updating"
        _info(f"{_I.WRENCH}  {action} Docker proxy drop-in at {self.dropin_file}")
        self.run_cmd(["tee", str(self.dropin_file)], stdin_data=template)
        self.dropin_changed = True
        self.changed.append(str(self.dropin_file))

        _info(f"{_I.RECYCLE}  Reloading systemd and restarting {DOCKER_SERVICE}")
        self.run_cmd(["systemctl", "daemon-reload"])
        self.run_cmd(["systemctl", "restart", DOCKER_SERVICE])
        self.restarted.append(f"restart {DOCKER_SERVICE}")

    # ── summary ───────────────────────────────────────────────────────────

    def _print_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        _banner(f"{_I.CHECK}  netdiscard complete ({elapsed:.1f}s)")

        prefix = "would change" if self.dry_run else "changed"
        if self.changed:
            _info(f"{prefix.capitalize()}: {', '.join(self.changed)}")
        else:
            _info("Nothing to change; host already converged")
        if self.started:
            _info(f"Started:   {', '.join(self.started)}")
        if self.restarted:
            _info(f"Restarted: {', '.join(self.restarted)}")

        print()
        _info("Docker outbound network effectively disabled via "
              "proxy=http(s)://localhost:9 backed by inetd discard service.")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="netdiscard",
        description="Block Docker image pulls by proxying dockerd to the "
                    "inetd discard service on localhost:9.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  netdiscard                   # converge the host (uses sudo when not root)
  netdiscard --dry-run         # show what would change
  netdiscard -q                # section banners, warnings and errors only
  netdiscard --skip-docker     # discard service only
  python -m netdiscard         # same, without the console script
""",
    )
    for section in SECTIONS:
        p.add_argument(
            f"--skip-{section}",
            dest=f"skip_{section}",
            action="store_true",
            help=f"skip the {section} section",
        )
    p.add_argument(
        "--inetd-conf", type=Path, default=INETD_CONF,
        help=f"inetd configuration file (default: {INETD_CONF})",
    )
    p.add_argument(
        "--discard-conf", type=Path, default=DISCARD_CONF,
        help="fragment holding the canonical discard entries",
    )
    p.add_argument(
        "--dropin-template", type=Path, default=DROPIN_TEMPLATE,
        help="systemd drop-in installed for docker.service",
    )
    p.add_argument(
        "--dropin-dir", type=Path, default=DROPIN_DIR,
        help=f"docker.service drop-in directory (default: {DROPIN_DIR})",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print commands without executing them",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command output; show only section banners, "
             "warnings, and errors",
    )
    return p


def exit_status(returncode: int) -> int:
    """Shell-style status for a failed command (killed by signal N -> 128+N)."""
    if returncode < 0:
        return 128 - returncode
    return returncode or 1


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    skipped = [s for s in SECTIONS if getattr(args, f"skip_{s}", False)]

    nd = NetDiscard(
        dry_run=args.dry_run,
        skip_sections=skipped,
        quiet=args.quiet,
        inetd_conf=args.inetd_conf,
        discard_conf=args.discard_conf,
        dropin_template=args.dropin_template,
        dropin_dir=args.dropin_dir,
    )

    try:
        nd.run()
    except subprocess.CalledProcessError as exc:
        cmd = " ".join(str(c) for c in exc.cmd)
        _error(f"{cmd} exited {exc.returncode}")
        sys.exit(exit_status(exc.returncode))
    except (FragmentError, OSError) as exc:
        _error(str(exc))
        sys.exit(1)
