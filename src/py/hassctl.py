#!/usr/bin/env python3
# --
# File: hassctl.py
#
# `hassctl` is a control utility for a Home Assistant installation running
# under systemd. It wraps `systemctl`, `journalctl`, `tail`, the virtualenv's
# `pip` and the `hass` executable, and can update itself from a remote branch.
#
# ## Usage
#
# >   hassctl [OPTIONS] COMMAND [ARGS...]
#
# ## Configuration
#
# >   ${HASSCTL_CONF:-/etc/hassctl.conf}
# >     BRANCH=master
# >     HASS_VENV=/srv/homeassistant
# >     HASS_USER=homeassistant
# >     HASS_CONFIG=/home/${HASS_USER}/.homeassistant
# >     HASS_SERVICE=home-assistant@${HASS_USER}
# >     ZWAVE_LOG=${HASS_CONFIG}/OZW_Log.txt
# >     PIP_EXEC=${HASS_VENV}/bin/pip3
# >     HASS_EXEC=${HASS_VENV}/bin/hass
#
# Any of the keys above can be set in the environment, which takes
# precedence over the configuration file.

import argparse
import contextlib
import enum
import os
import pwd
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping, NoReturn, Optional

# -----------------------------------------------------------------------------
#
# CONFIGURATION
#
# -----------------------------------------------------------------------------

HASSCTL_VERSION = "1.0.0"
HASSCTL_CONF = os.environ.get("HASSCTL_CONF", "/etc/hassctl.conf")
HASSCTL_REMOTE = os.environ.get(
	"HASSCTL_REMOTE", "https://raw.githubusercontent.com/dale3h/hassctl"
)
HASSCTL_DEBUG = os.environ.get("HASSCTL_DEBUG", "") == "1"
HASSCTL_NO_COLOR = (
	os.environ.get("HASSCTL_NO_COLOR", "") == "1" or "NO_COLOR" in os.environ
)
HASSCTL_DEFAULT_TIMEOUT = 30
# Paths of published files relative to a branch of HASSCTL_REMOTE
HASSCTL_REMOTE_SCRIPT = "src/py/hassctl.py"
HASSCTL_REMOTE_CONF = "hassctl.conf"

HASSCTL_DEFAULT_BRANCH = "master"
HASSCTL_DEFAULT_VENV = "/srv/homeassistant"
HASSCTL_DEFAULT_USER = "homeassistant"
HASSCTL_PACKAGE = "homeassistant"

# Keys recognized in the configuration file and the environment
HASSCTL_CONFIG_KEYS = (
	"BRANCH",
	"HASS_VENV",
	"HASS_CONFIG",
	"HASS_USER",
	"HASS_SERVICE",
	"ZWAVE_LOG",
	"PIP_EXEC",
	"HASS_EXEC",
)

# An empty HASS_VENV means "no virtualenv", every other key falls back to
# its default when empty.
_ALLOW_EMPTY = ("HASS_VENV",)

# Global runtime state
_debug = HASSCTL_DEBUG
_quiet = False
_no_color = HASSCTL_NO_COLOR
_dry_run = False

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class HassctlError(Exception):
	"""Base error, reported as `hassctl: error: MESSAGE` with exit code 1."""


class ConfigError(HassctlError):
	"""Raised when a setting is missing or points to something invalid."""


class FetchError(HassctlError):
	"""Raised when a remote file cannot be downloaded."""


class UsageError(HassctlError):
	"""Raised on unknown commands or invalid options."""


@dataclass(frozen=True)
class Config:
	"""Resolved and validated settings."""

	path: str
	branch: str
	hass_venv: str
	hass_config: str
	hass_user: str
	hass_service: str
	zwave_log: str
	pip_exec: str
	hass_exec: str


class Verb(enum.Enum):
	"""Commands accepted as the first argument."""

	HELP = "help"
	VERSION = "version"
	START = "start"
	STOP = "stop"
	RESTART = "restart"
	KILL = "kill"
	KILL_ALT = "kill-alt"
	LOG = "log"
	ERROR = "error"
	DEBUG = "debug"
	ZWAVE = "zwave"
	CONFIG = "config"
	UPDATE_HASSCTL = "update-hassctl"
	UPDATE_HASS = "update-hass"
	BACKUP = "backup"
	SERVICE = "service"
	LIST_UNITS = "list-units"
	LIST_SOCKETS = "list-sockets"
	LIST_TIMERS = "list-timers"
	RELOAD = "reload"
	RELOAD_OR_RESTART = "reload-or-restart"
	IS_ACTIVE = "is-active"
	IS_ENABLED = "is-enabled"
	IS_FAILED = "is-failed"
	STATUS = "status"
	SHOW = "show"
	CAT = "cat"
	ENABLE = "enable"
	DISABLE = "disable"

	@classmethod
	def parse(cls, name: str) -> "Verb":
		"""Return the verb for `name` or raise `UsageError`."""
		try:
			return cls(name)
		except ValueError:
			raise UsageError(f"unknown command: {name}") from None


# Verbs passed verbatim to systemctl
HASSCTL_LIFECYCLE_VERBS = frozenset(
	(
		Verb.START,
		Verb.STOP,
		Verb.RESTART,
		Verb.RELOAD,
		Verb.RELOAD_OR_RESTART,
		Verb.STATUS,
		Verb.SHOW,
		Verb.CAT,
		Verb.ENABLE,
		Verb.DISABLE,
		Verb.IS_ACTIVE,
		Verb.IS_ENABLED,
		Verb.IS_FAILED,
		Verb.LIST_UNITS,
		Verb.LIST_SOCKETS,
		Verb.LIST_TIMERS,
	)
)


class Identity:
	"""Looks up host users. Tests substitute a fake."""

	def current_user(self) -> str:
		uid = os.geteuid()
		try:
			return pwd.getpwuid(uid).pw_name
		except KeyError:
			return str(uid)

	def user_exists(self, name: str) -> bool:
		if not name:
			return False
		try:
			pwd.getpwnam(name)
			return True
		except KeyError:
			return False

	def is_root(self) -> bool:
		return os.geteuid() == 0


@dataclass
class Runtime:
	"""Collaborators used by command handlers.

	Every interaction with the host (environment, users, processes, network)
	goes through one of these fields, so handlers can be exercised with fakes.
	Fields left as `None` are filled with the real implementations.
	"""

	env: Optional[Mapping[str, str]] = None
	config_path: Optional[Path] = None
	identity: Optional[Identity] = None
	run: Optional[Callable[[list[str]], int]] = None
	stream: Optional[Callable[[list[str]], contextlib.AbstractContextManager]] = None
	fetch: Optional[Callable[[str], bytes]] = None
	remote: Optional[str] = None
	self_path: Optional[Path] = None
	proc: Path = Path("/proc")

	def __post_init__(self) -> None:
		if self.env is None:
			self.env = dict(os.environ)
		if self.config_path is None:
			self.config_path = Path(self.env.get("HASSCTL_CONF", HASSCTL_CONF))
		if self.identity is None:
			self.identity = Identity()
		if self.run is None:
			self.run = hassctl_util_run
		if self.stream is None:
			self.stream = hassctl_util_stream
		if self.fetch is None:
			self.fetch = hassctl_util_fetch
		if self.remote is None:
			self.remote = self.env.get("HASSCTL_REMOTE", HASSCTL_REMOTE)
		if self.self_path is None:
			self.self_path = Path(__file__).resolve()


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------

# =============================================================================
# Logging
# =============================================================================


# Function: hassctl_util_log LEVEL MESSAGE
# Errors and warnings go to stderr, the rest to stdout.
def hassctl_util_log(level: str, msg: str) -> None:
	"""Log message respecting debug/quiet settings."""
	if level == "debug":
		if _debug:
			print(hassctl_util_color(f"[debug] {msg}", "dim"))
		return
	if level == "error":
		label = hassctl_util_color("error:", "red", sys.stderr)
		print(f"hassctl: {label} {msg}", file=sys.stderr)
	elif level == "warn":
		label = hassctl_util_color("warning:", "yellow", sys.stderr)
		print(f"hassctl: {label} {msg}", file=sys.stderr)
	elif not _quiet:
		print(msg)


# =============================================================================
# Colors
# =============================================================================

HASSCTL_COLORS = {
	"red": "\033[31m",
	"green": "\033[32m",
	"yellow": "\033[33m",
	"blue": "\033[34m",
	"magenta": "\033[35m",
	"cyan": "\033[36m",
	"dim": "\033[2m",
	"bold": "\033[1m",
	"reset": "\033[0m",
}


# Function: hassctl_util_color TEXT COLOR [STREAM]
# Colorize text if colors enabled and STREAM is a terminal.
def hassctl_util_color(text: str, color: str, stream=None) -> str:
	"""Colorize text if colors enabled."""
	stream = stream or sys.stdout
	if _no_color or not stream.isatty():
		return text
	return f"{HASSCTL_COLORS.get(color, '')}{text}{HASSCTL_COLORS['reset']}"


# =============================================================================
# Subprocess
# =============================================================================


# Function: hassctl_util_run CMD
# Run command attached to the terminal, return its exit code.
def hassctl_util_run(cmd: list[str]) -> int:
	"""Run command in the foreground and return its exit code."""
	if _dry_run:
		hassctl_util_log("info", f"[dry-run] Would run: {shlex.join(cmd)}")
		return 0
	hassctl_util_log("debug", f"run: {shlex.join(cmd)}")
	try:
		return subprocess.run(cmd).returncode
	except FileNotFoundError:
		hassctl_util_log("error", f"Command not found: {cmd[0]}")
		return 127


class Stream:
	"""Output lines of a command, and its exit code once they run out."""

	def __init__(self, lines: Iterable[str], wait: Optional[Callable[[], int]] = None):
		self.lines = lines
		self._wait = wait

	def __iter__(self) -> Iterator[str]:
		return iter(self.lines)

	def wait(self) -> int:
		return self._wait() if self._wait else 0


# Function: hassctl_util_exit_code RETURNCODE
# Map a child killed by signal N to 128+N, as shells do.
def hassctl_util_exit_code(returncode: int) -> int:
	return 128 - returncode if returncode < 0 else returncode


# Function: hassctl_util_stream CMD
# Start command and yield a Stream of its stdout, terminating it on exit.
@contextlib.contextmanager
def hassctl_util_stream(cmd: list[str]) -> Iterator[Stream]:
	"""Yield the output of a long-running command."""
	if _dry_run:
		hassctl_util_log("info", f"[dry-run] Would stream: {shlex.join(cmd)}")
		yield Stream(())
		return
	hassctl_util_log("debug", f"stream: {shlex.join(cmd)}")
	try:
		process = subprocess.Popen(
			cmd, stdout=subprocess.PIPE, text=True, errors="replace", bufsize=1
		)
	except FileNotFoundError:
		raise HassctlError(f"Command not found: {cmd[0]}") from None
	try:
		yield Stream(
			process.stdout, lambda: hassctl_util_exit_code(process.wait())
		)
	finally:
		if process.poll() is None:
			process.terminate()
			try:
				process.wait(timeout=5)
			except subprocess.TimeoutExpired:
				process.kill()
				process.wait()
		process.stdout.close()


# =============================================================================
# Files & network
# =============================================================================


# Function: hassctl_util_timeout VALUE
# Parse HASSCTL_TIMEOUT, falling back to the default on bad values.
def hassctl_util_timeout(value: Optional[str]) -> int:
	if not value:
		return HASSCTL_DEFAULT_TIMEOUT
	try:
		timeout = int(value)
	except ValueError:
		timeout = 0
	if timeout <= 0:
		hassctl_util_log(
			"warn",
			f"Invalid HASSCTL_TIMEOUT '{value}', using {HASSCTL_DEFAULT_TIMEOUT}s",
		)
		return HASSCTL_DEFAULT_TIMEOUT
	return timeout


# Function: hassctl_util_fetch URL [TIMEOUT]
# Download URL and return the body, raising FetchError on any failure.
def hassctl_util_fetch(url: str, timeout: Optional[int] = None) -> bytes:
	"""GET `url` and return the response body."""
	if timeout is None:
		timeout = hassctl_util_timeout(os.environ.get("HASSCTL_TIMEOUT"))
	hassctl_util_log("debug", f"fetch: {url}")
	try:
		with urllib.request.urlopen(url, timeout=timeout) as response:
			if response.status != 200:
				raise FetchError(f"{url}: HTTP {response.status}")
			return response.read()
	except urllib.error.HTTPError as e:
		raise FetchError(f"{url}: HTTP {e.code}") from e
	except urllib.error.URLError as e:
		raise FetchError(f"{url}: {e.reason}") from e
	except OSError as e:
		raise FetchError(f"{url}: {e}") from e


# Function: hassctl_util_write_atomic PATH DATA MODE
# Write DATA next to PATH and rename it over PATH in one step.
def hassctl_util_write_atomic(path: Path, data: bytes, mode: int) -> None:
	"""Replace `path` with `data`; on failure `path` is left untouched."""
	fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
	try:
		with os.fdopen(fd, "wb") as f:
			f.write(data)
		os.chmod(tmp, mode)
		os.replace(tmp, path)
	except BaseException:
		with contextlib.suppress(OSError):
			os.unlink(tmp)
		raise


# Function: hassctl_util_remote_url RUNTIME BRANCH NAME
def hassctl_util_remote_url(rt: Runtime, branch: str, name: str) -> str:
	"""Return the URL of `name` on the remote `branch`."""
	return f"{rt.remote.rstrip('/')}/{branch}/{name}"


# -----------------------------------------------------------------------------
#
# CONFIG
#
# -----------------------------------------------------------------------------

_ASSIGNMENT_RE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_REFERENCE_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")
_UNSUPPORTED_RE = re.compile(r"[$`]|^~")


# Function: hassctl_config_parse TEXT ENV [SOURCE]
# Parse shell-style KEY=value assignments.
def hassctl_config_parse(
	text: str, env: Mapping[str, str], source: str = "<config>"
) -> dict[str, str]:
	"""Parse a shell-sourced configuration file into a dict.

	Values follow shell quoting rules. `$VAR` and `${VAR}` are expanded
	against the effective value of earlier keys (environment first for
	recognized keys), then the environment. Single-quoted values are taken
	literally. Other expansions (`${VAR:-x}`, `$(cmd)`, backticks, `~`) are
	kept as written, with a warning.
	"""
	values: dict[str, str] = {}

	def lookup(match: re.Match) -> str:
		name = match.group(1) or match.group(2)
		if name in HASSCTL_CONFIG_KEYS and name in env:
			return env[name]
		if name in values:
			return values[name]
		return env.get(name, "")

	for lineno, raw in enumerate(text.splitlines(), 1):
		line = raw.strip()
		if not line or line.startswith("#"):
			continue
		match = _ASSIGNMENT_RE.match(line)
		if not match:
			hassctl_util_log("debug", f"{source}:{lineno}: ignoring '{line}'")
			continue
		key, rest = match.groups()
		try:
			words = shlex.split(rest, comments=True)
		except ValueError as e:
			raise ConfigError(f"{source}:{lineno}: {e}") from None
		value = words[0] if words else ""
		if not rest.lstrip().startswith("'"):
			value = _REFERENCE_RE.sub(lookup, value)
			if _UNSUPPORTED_RE.search(value):
				hassctl_util_log(
					"warn",
					f"{source}:{lineno}: {key} uses unsupported shell syntax, "
					f"taken literally: {value}",
				)
		values[key] = value
	return values


# Function: hassctl_config_merge VALUES ENV
# Environment values take precedence over file values.
def hassctl_config_merge(
	values: Mapping[str, str], env: Mapping[str, str]
) -> dict[str, str]:
	"""Return the recognized keys, environment first then file."""
	merged = {}
	for key in HASSCTL_CONFIG_KEYS:
		if key in env:
			merged[key] = env[key]
		elif key in values:
			merged[key] = values[key]
	return merged


# Function: hassctl_config_defaults SETTINGS PATH
# Fill unset keys with built-in defaults, in dependency order.
def hassctl_config_defaults(settings: Mapping[str, str], path: str) -> Config:
	"""Build a `Config` from merged settings."""

	def get(key: str, default: Callable[[], str]) -> str:
		value = settings.get(key)
		if value is None or (value == "" and key not in _ALLOW_EMPTY):
			return default()
		return value

	branch = get("BRANCH", lambda: HASSCTL_DEFAULT_BRANCH)
	venv = get("HASS_VENV", lambda: HASSCTL_DEFAULT_VENV)
	user = get("HASS_USER", lambda: HASSCTL_DEFAULT_USER)
	hass_config = get("HASS_CONFIG", lambda: f"/home/{user}/.homeassistant")

	def executable(name: str) -> str:
		if venv:
			return f"{venv}/bin/{name}"
		return shutil.which(name) or name

	return Config(
		path=path,
		branch=branch,
		hass_venv=venv,
		hass_config=hass_config,
		hass_user=user,
		hass_service=get("HASS_SERVICE", lambda: f"home-assistant@{user}"),
		zwave_log=get("ZWAVE_LOG", lambda: f"{hass_config}/OZW_Log.txt"),
		pip_exec=get("PIP_EXEC", lambda: executable("pip3")),
		hass_exec=get("HASS_EXEC", lambda: executable("hass")),
	)


# Function: hassctl_config_validate CONFIG IDENTITY
# Check that every referenced path and the user exist.
def hassctl_config_validate(config: Config, identity: Identity) -> None:
	"""Raise `ConfigError` naming the first invalid setting."""
	edit = f"Please edit {config.path}"
	if config.hass_venv and not Path(config.hass_venv).is_dir():
		raise ConfigError(f"HASS_VENV is not a directory: {config.hass_venv}. {edit}")
	if not Path(config.hass_config).is_dir():
		raise ConfigError(
			f"HASS_CONFIG is not a directory: {config.hass_config}. {edit}"
		)
	if not identity.user_exists(config.hass_user):
		raise ConfigError(f"HASS_USER does not exist: {config.hass_user}. {edit}")
	for key, value in (("PIP_EXEC", config.pip_exec), ("HASS_EXEC", config.hass_exec)):
		if not Path(value).is_file():
			raise ConfigError(f"{key} does not exist: {value}. {edit}")
		if not os.access(value, os.X_OK):
			raise ConfigError(f"{key} is not executable: {value}. {edit}")


# Function: hassctl_config_fetch_default RUNTIME PATH BRANCH
# Download the default configuration file. Failure is only a warning.
def hassctl_config_fetch_default(rt: Runtime, path: Path, branch: str) -> bool:
	"""Try to install the remote default configuration at `path`."""
	url = hassctl_util_remote_url(rt, branch, HASSCTL_REMOTE_CONF)
	if _dry_run:
		hassctl_util_log("info", f"[dry-run] Would download {url} to {path}")
		return False
	hassctl_util_log("info", f"{path} not found, downloading default from {url}")
	try:
		hassctl_util_write_atomic(path, rt.fetch(url), 0o644)
	except (FetchError, OSError) as e:
		hassctl_util_log(
			"warn", f"Could not install default configuration ({e}), using defaults"
		)
		return False
	return True


# Function: hassctl_config_resolve RUNTIME
# Load, default and validate the configuration.
def hassctl_config_resolve(rt: Runtime) -> Config:
	"""Return a validated `Config` or raise `ConfigError`."""
	path = rt.config_path
	if not path.exists():
		branch = rt.env.get("BRANCH") or HASSCTL_DEFAULT_BRANCH
		hassctl_config_fetch_default(rt, path, branch)

	values: dict[str, str] = {}
	if path.is_file():
		try:
			text = path.read_text()
		except OSError as e:
			raise ConfigError(f"Cannot read {path}: {e.strerror}") from None
		values = hassctl_config_parse(text, rt.env, str(path))

	config = hassctl_config_defaults(hassctl_config_merge(values, rt.env), str(path))
	hassctl_util_log("debug", f"config: {config}")
	hassctl_config_validate(config, rt.identity)
	return config


# -----------------------------------------------------------------------------
#
# EXEC
#
# -----------------------------------------------------------------------------


# Function: hassctl_exec_as_user RUNTIME USER CMD
# Prefix CMD with `sudo -u USER` when running as somebody else.
def hassctl_exec_as_user(rt: Runtime, user: str, cmd: list[str]) -> list[str]:
	"""Return `cmd` adjusted to run as `user`."""
	current = rt.identity.current_user()
	if current != user and rt.identity.user_exists(user):
		hassctl_util_log("debug", f"switching user: {current} -> {user}")
		return ["sudo", "-u", user, "-H", *cmd]
	return list(cmd)


# Function: hassctl_exec_elevated RUNTIME CMD
# Prefix CMD with `sudo` unless already root.
def hassctl_exec_elevated(rt: Runtime, cmd: list[str]) -> list[str]:
	if rt.identity.is_root():
		return list(cmd)
	return ["sudo", *cmd]


# -----------------------------------------------------------------------------
#
# PROCESS
#
# -----------------------------------------------------------------------------


# Function: hassctl_process_list [PROC]
# Return (PID, argv) for every readable process.
def hassctl_process_list(proc: Path = Path("/proc")) -> list[tuple[int, list[str]]]:
	"""List processes from /proc."""
	processes = []
	for entry in proc.iterdir():
		if not entry.name.isdigit():
			continue
		try:
			cmdline = (entry / "cmdline").read_bytes()
		except OSError:
			continue
		argv = [a.decode(errors="replace") for a in cmdline.split(b"\x00") if a]
		if argv:
			processes.append((int(entry.name), argv))
	return processes


# Function: hassctl_process_find NAME [PROC]
# Return PIDs whose program or script basename is NAME.
def hassctl_process_find(name: str, proc: Path = Path("/proc")) -> list[int]:
	"""Find processes running `name`, directly or through a Python interpreter."""
	own = os.getpid()
	pids = []
	for pid, argv in hassctl_process_list(proc):
		if pid == own:
			continue
		program = os.path.basename(argv[0])
		script = os.path.basename(argv[1]) if len(argv) > 1 else ""
		if program == name or (program.startswith("python") and script == name):
			pids.append(pid)
	return sorted(pids)


# -----------------------------------------------------------------------------
#
# STREAM
#
# -----------------------------------------------------------------------------

HASSCTL_ERROR_PATTERN = re.compile(r"error|exception|fail|warn|critical", re.IGNORECASE)
# Service calls whose names match the error pattern but are routine
HASSCTL_ERROR_BENIGN = ("remove_failed_node", "replace_failed_node")
HASSCTL_DEBUG_PATTERN = re.compile(r"\d{2}:\d{2}:\d{2}(?:\.\d+)? DEBUG")

# OpenZWave log level -> color
HASSCTL_ZWAVE_COLORS = {
	"Always": "magenta",
	"Detail": "dim",
	"Info": "green",
	"Warning": "yellow",
	"Error": "red",
}
_ZWAVE_LEVEL_RE = re.compile(r"\b(" + "|".join(HASSCTL_ZWAVE_COLORS) + r")\b")


def hassctl_stream_is_error(line: str) -> bool:
	if any(name in line for name in HASSCTL_ERROR_BENIGN):
		return False
	return HASSCTL_ERROR_PATTERN.search(line) is not None


def hassctl_stream_is_debug(line: str) -> bool:
	return HASSCTL_DEBUG_PATTERN.search(line) is not None


# Function: hassctl_stream_zwave_color LINE
# Return the color for the first level keyword in LINE, if any.
def hassctl_stream_zwave_color(line: str) -> Optional[str]:
	match = _ZWAVE_LEVEL_RE.search(line)
	return HASSCTL_ZWAVE_COLORS[match.group(1)] if match else None


def hassctl_stream_zwave_annotate(line: str) -> str:
	"""Wrap `line` in the ANSI color of its level."""
	color = hassctl_stream_zwave_color(line)
	if not color:
		return line
	return f"{HASSCTL_COLORS[color]}{line}{HASSCTL_COLORS['reset']}"


# Function: hassctl_stream_pipe LINES ACCEPT ANNOTATE SINK
# Push each line through filter and annotate steps into SINK.
def hassctl_stream_pipe(
	lines: Iterable[str],
	accept: Optional[Callable[[str], bool]] = None,
	annotate: Optional[Callable[[str], str]] = None,
	sink: Optional[Callable[[str], None]] = None,
) -> int:
	"""Return the number of lines written to the sink."""
	sink = sink or (lambda line: print(line, flush=True))
	count = 0
	for line in lines:
		line = line.rstrip("\r\n")
		if accept and not accept(line):
			continue
		sink(annotate(line) if annotate else line)
		count += 1
	return count


# Function: hassctl_stream_view RUNTIME CMD ACCEPT ANNOTATE CLEAR
# Stream CMD output until it exits or is interrupted, return its exit code.
def hassctl_stream_view(
	rt: Runtime,
	cmd: list[str],
	accept: Optional[Callable[[str], bool]] = None,
	annotate: Optional[Callable[[str], str]] = None,
	clear: bool = True,
) -> int:
	if clear and not _dry_run:
		print("\033[2J\033[H", end="", flush=True)  # ANSI clear screen + home
	try:
		with rt.stream(cmd) as stream:
			hassctl_stream_pipe(stream, accept, annotate)
			code = stream.wait()
	except KeyboardInterrupt:
		return 0
	if code:
		hassctl_util_log("debug", f"{cmd[0]} exited with {code}")
	return code


# -----------------------------------------------------------------------------
#
# COMMANDS
#
# -----------------------------------------------------------------------------

Handler = Callable[[Runtime, Verb, list[str]], int]


# Function: hassctl_cmd_systemctl RUNTIME VERB ARGS
# Forward VERB and ARGS to systemctl for the configured service.
def hassctl_cmd_systemctl(rt: Runtime, verb: Verb, args: list[str]) -> int:
	config = hassctl_config_resolve(rt)
	cmd = ["systemctl", verb.value, *args, config.hass_service]
	return rt.run(hassctl_exec_elevated(rt, cmd))


def hassctl_cmd_kill(rt: Runtime, verb: Verb, args: list[str]) -> int:
	"""Send SIGKILL to the service through systemd."""
	config = hassctl_config_resolve(rt)
	cmd = ["systemctl", "kill", "--signal=SIGKILL", *args, config.hass_service]
	return rt.run(hassctl_exec_elevated(rt, cmd))


# Function: hassctl_cmd_kill_alt RUNTIME VERB ARGS
# Kill matching processes directly, bypassing systemd.
def hassctl_cmd_kill_alt(rt: Runtime, verb: Verb, args: list[str]) -> int:
	"""Send SIGKILL to every process running the hass executable."""
	config = hassctl_config_resolve(rt)
	name = os.path.basename(config.hass_exec)
	pids = hassctl_process_find(name, rt.proc)
	if not pids:
		raise HassctlError(f"No running '{name}' process found")
	hassctl_util_log("info", f"Killing {name}: {' '.join(map(str, pids))}")
	if _dry_run or not rt.identity.is_root():
		cmd = ["kill", "-KILL", *map(str, pids)]
		return rt.run(hassctl_exec_elevated(rt, cmd))
	failed = 0
	for pid in pids:
		try:
			os.kill(pid, signal.SIGKILL)
		except ProcessLookupError:
			hassctl_util_log("debug", f"PID {pid} already exited")
		except OSError as e:
			hassctl_util_log("error", f"Failed to kill PID {pid}: {e.strerror}")
			failed += 1
	return 1 if failed else 0


def hassctl_cmd_log(rt: Runtime, verb: Verb, args: list[str]) -> int:
	"""Follow the service journal, filtered according to `verb`."""
	config = hassctl_config_resolve(rt)
	accept = {
		Verb.LOG: None,
		Verb.ERROR: hassctl_stream_is_error,
		Verb.DEBUG: hassctl_stream_is_debug,
	}[verb]
	cmd = ["journalctl", "-f", "-u", config.hass_service, *args]
	return hassctl_stream_view(rt, hassctl_exec_elevated(rt, cmd), accept=accept)


# Function: hassctl_cmd_zwave RUNTIME VERB ARGS
# Follow the Z-Wave log with one color per severity.
def hassctl_cmd_zwave(rt: Runtime, verb: Verb, args: list[str]) -> int:
	config = hassctl_config_resolve(rt)
	log = Path(config.zwave_log)
	if not log.is_file():
		raise HassctlError(f"Z-Wave log not found: {log}. Check ZWAVE_LOG in {config.path}")
	if not os.access(log, os.R_OK):
		raise HassctlError(f"Z-Wave log is not readable: {log}")
	annotate = None if _no_color else hassctl_stream_zwave_annotate
	cmd = ["tail", "-F", *args, str(log)]
	return hassctl_stream_view(rt, cmd, annotate=annotate, clear=False)


def hassctl_cmd_config(rt: Runtime, verb: Verb, args: list[str]) -> int:
	"""Run Home Assistant's configuration check as the service user."""
	config = hassctl_config_resolve(rt)
	cmd = [
		config.hass_exec,
		"--script",
		"check_config",
		"-c",
		config.hass_config,
		*args,
	]
	return rt.run(hassctl_exec_as_user(rt, config.hass_user, cmd))


# Function: hassctl_cmd_update_hass RUNTIME VERB [VERSION]
# Upgrade the homeassistant package, optionally to VERSION.
def hassctl_cmd_update_hass(rt: Runtime, verb: Verb, args: list[str]) -> int:
	config = hassctl_config_resolve(rt)
	if len(args) > 1:
		raise UsageError(f"{verb.value} takes at most one argument (VERSION)")
	package = f"{HASSCTL_PACKAGE}=={args[0]}" if args else HASSCTL_PACKAGE
	cmd = [config.pip_exec, "install", "--upgrade", package]
	return rt.run(hassctl_exec_as_user(rt, config.hass_user, cmd))


# Function: hassctl_cmd_check_self BODY URL TARGET
# Reject a download that is not a loadable copy of this module.
def hassctl_cmd_check_self(body: bytes, url: str, target: Path) -> None:
	try:
		compile(body, target.name, "exec")
	except (SyntaxError, ValueError) as e:
		raise HassctlError(
			f"{url} is not valid Python ({e}), {target} left unchanged"
		) from None
	if b"def hassctl_main(" not in body:
		raise HassctlError(f"{url} is not hassctl, {target} left unchanged")


# Function: hassctl_cmd_update_hassctl RUNTIME VERB ARGS
# Replace the installed copy with the one from the configured branch.
def hassctl_cmd_update_hassctl(rt: Runtime, verb: Verb, args: list[str]) -> int:
	"""Self-update: either the installed copy is fully replaced or untouched."""
	config = hassctl_config_resolve(rt)
	target = rt.self_path
	url = hassctl_util_remote_url(rt, config.branch, HASSCTL_REMOTE_SCRIPT)
	if _dry_run:
		hassctl_util_log("info", f"[dry-run] Would download {url} to {target}")
		return 0
	hassctl_util_log("info", f"Downloading {url}")
	body = rt.fetch(url)
	hassctl_cmd_check_self(body, url, target)
	try:
		mode = target.stat().st_mode & 0o777
	except OSError:
		mode = 0o755
	try:
		hassctl_util_write_atomic(target, body, mode | 0o111)
	except OSError as e:
		raise HassctlError(f"Could not replace {target}: {e}") from None
	hassctl_util_log("info", f"Updated {target} from branch {config.branch}")
	return 0


def hassctl_cmd_unimplemented(rt: Runtime, verb: Verb, args: list[str]) -> int:
	hassctl_util_log("warn", f"'{verb.value}' is not yet implemented")
	hassctl_CLI_usage()
	return 1


def hassctl_cmd_help(rt: Runtime, verb: Verb, args: list[str]) -> int:
	hassctl_CLI_usage()
	return 1


def hassctl_cmd_version(rt: Runtime, verb: Verb, args: list[str]) -> int:
	print(HASSCTL_VERSION)
	return 0


# -----------------------------------------------------------------------------
#
# CLI
#
# -----------------------------------------------------------------------------

HASSCTL_HANDLERS: dict[Verb, Handler] = {
	Verb.HELP: hassctl_cmd_help,
	Verb.VERSION: hassctl_cmd_version,
	Verb.KILL: hassctl_cmd_kill,
	Verb.KILL_ALT: hassctl_cmd_kill_alt,
	Verb.LOG: hassctl_cmd_log,
	Verb.ERROR: hassctl_cmd_log,
	Verb.DEBUG: hassctl_cmd_log,
	Verb.ZWAVE: hassctl_cmd_zwave,
	Verb.CONFIG: hassctl_cmd_config,
	Verb.UPDATE_HASSCTL: hassctl_cmd_update_hassctl,
	Verb.UPDATE_HASS: hassctl_cmd_update_hass,
	Verb.BACKUP: hassctl_cmd_unimplemented,
	Verb.SERVICE: hassctl_cmd_unimplemented,
	**{verb: hassctl_cmd_systemctl for verb in HASSCTL_LIFECYCLE_VERBS},
}

HASSCTL_USAGE = """\
Usage: hassctl [OPTIONS] COMMAND [ARGS...]

Options:
  -D, --debug        Print diagnostic traces
  -q, --quiet        Suppress informational output
  -n, --dry-run      Show commands instead of running them
      --no-color     Disable colored output
  -h, --help         Show this help
  -V, --version      Show version

Service commands (forwarded to systemctl):
  start, stop, restart, reload, reload-or-restart, status, show, cat,
  enable, disable, is-active, is-enabled, is-failed,
  list-units, list-sockets, list-timers

Other commands:
  kill               Kill the service with SIGKILL through systemd
  kill-alt           Kill hass processes directly
  log                Follow the Home Assistant log
  error              Follow errors and warnings only
  debug              Follow DEBUG lines only
  zwave              Follow the colorized Z-Wave log
  config             Check the Home Assistant configuration
  update-hass [VER]  Upgrade Home Assistant (optionally to VER)
  update-hassctl     Update hassctl from its remote branch
  backup             (not yet implemented)
  service            (not yet implemented)
  version            Show version
  help               Show this help
"""


class HassctlArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser raising UsageError instead of exiting."""

	def error(self, message: str) -> NoReturn:
		raise UsageError(message)


# Function: hassctl_CLI_build_parser
# Parser for the global options preceding the command.
def hassctl_CLI_build_parser() -> argparse.ArgumentParser:
	parser = HassctlArgumentParser(prog="hassctl", add_help=False)
	parser.add_argument("-D", "--debug", action="store_true")
	parser.add_argument("-q", "--quiet", action="store_true")
	parser.add_argument("-n", "--dry-run", action="store_true")
	parser.add_argument("--no-color", action="store_true")
	parser.add_argument("-h", "--help", action="store_true")
	parser.add_argument("-V", "--version", action="store_true")
	return parser


# Function: hassctl_CLI_split ARGV
# Split ARGV into leading options and COMMAND ARGS...
def hassctl_CLI_split(argv: list[str]) -> tuple[list[str], list[str]]:
	index = 0
	while index < len(argv) and argv[index].startswith("-"):
		index += 1
	return argv[:index], argv[index:]


def hassctl_CLI_usage() -> None:
	print(HASSCTL_USAGE, end="")


# Function: hassctl_CLI_dispatch RUNTIME ARGV
# Parse the command and run its handler.
def hassctl_CLI_dispatch(rt: Runtime, argv: list[str]) -> int:
	"""Dispatch `COMMAND ARGS...` and return the exit code."""
	if not argv:
		hassctl_CLI_usage()
		return 1
	try:
		verb = Verb.parse(argv[0])
	except UsageError as e:
		hassctl_util_log("error", str(e))
		hassctl_CLI_usage()
		return 1
	hassctl_util_log("debug", f"command: {verb.value} {shlex.join(argv[1:])}")
	try:
		return HASSCTL_HANDLERS[verb](rt, verb, argv[1:])
	except HassctlError as e:
		hassctl_util_log("error", str(e))
		return 1
	except KeyboardInterrupt:
		return 130


# -----------------------------------------------------------------------------
#
# MAIN
#
# -----------------------------------------------------------------------------


# Function: hassctl_main
# Main entry point.
def hassctl_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	global _debug, _quiet, _no_color, _dry_run

	argv = sys.argv[1:] if argv is None else list(argv)
	options, command = hassctl_CLI_split(argv)
	try:
		args = hassctl_CLI_build_parser().parse_args(options)
	except UsageError as e:
		hassctl_util_log("error", str(e))
		hassctl_CLI_usage()
		return 1

	_debug = args.debug or HASSCTL_DEBUG
	_quiet = args.quiet
	_no_color = args.no_color or HASSCTL_NO_COLOR
	_dry_run = args.dry_run

	if args.help:
		command = [Verb.HELP.value]
	elif args.version:
		command = [Verb.VERSION.value]

	return hassctl_CLI_dispatch(Runtime(), command)


if __name__ == "__main__":
	sys.exit(hassctl_main())

# EOF
