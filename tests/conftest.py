import contextlib
from pathlib import Path

import pytest

import hassctl


class FakeIdentity(hassctl.Identity):
	def __init__(self, current="pi", users=("pi", "homeassistant"), root=False):
		self.current = current
		self.users = set(users)
		self.root = root

	def current_user(self):
		return self.current

	def user_exists(self, name):
		return name in self.users

	def is_root(self):
		return self.root


class Recorder:
	"""Stands in for `Runtime.run`, remembering every command."""

	def __init__(self, code=0):
		self.code = code
		self.calls = []

	def __call__(self, cmd):
		self.calls.append(list(cmd))
		return self.code


class FakeStream:
	"""Stands in for `Runtime.stream`, yielding canned lines and exit code."""

	def __init__(self, lines=(), code=0):
		self.lines = list(lines)
		self.code = code
		self.calls = []

	@contextlib.contextmanager
	def __call__(self, cmd):
		self.calls.append(list(cmd))
		yield hassctl.Stream(self.lines, lambda: self.code)


class FakeFetch:
	def __init__(self, bodies=None, error=None):
		self.bodies = bodies or {}
		self.error = error
		self.urls = []

	def __call__(self, url):
		self.urls.append(url)
		if self.error:
			raise self.error
		if url not in self.bodies:
			raise hassctl.FetchError(f"{url}: HTTP 404")
		return self.bodies[url]


def make_executable(path: Path) -> Path:
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text("#!/bin/sh\n")
	path.chmod(0o755)
	return path


@pytest.fixture(autouse=True)
def quiet_globals(monkeypatch):
	monkeypatch.setattr(hassctl, "_debug", False)
	monkeypatch.setattr(hassctl, "_quiet", False)
	monkeypatch.setattr(hassctl, "_no_color", False)
	monkeypatch.setattr(hassctl, "_dry_run", False)


@pytest.fixture
def install(tmp_path):
	"""A complete installation: virtualenv, config dir and config file."""
	venv = tmp_path / "srv" / "homeassistant"
	make_executable(venv / "bin" / "pip3")
	make_executable(venv / "bin" / "hass")
	config_dir = tmp_path / "home" / "homeassistant" / ".homeassistant"
	config_dir.mkdir(parents=True)
	conf = tmp_path / "hassctl.conf"
	conf.write_text(
		f'HASS_VENV="{venv}"\n'
		f'HASS_CONFIG="{config_dir}"\n'
		"HASS_USER=homeassistant\n"
	)
	return {"venv": venv, "config_dir": config_dir, "conf": conf, "root": tmp_path}


@pytest.fixture
def runtime(install):
	"""Runtime wired to fakes, with an empty environment."""

	def build(**overrides):
		fields = {
			"env": {},
			"config_path": install["conf"],
			"identity": FakeIdentity(),
			"run": Recorder(),
			"stream": FakeStream(),
			"fetch": FakeFetch(),
			"remote": "https://example.invalid/hassctl",
			"self_path": install["root"] / "bin" / "hassctl",
		}
		fields.update(overrides)
		return hassctl.Runtime(**fields)

	return build
