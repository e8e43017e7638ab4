"""
Mount configuration: a JSON file merged with command line overrides.
"""
import argparse
import dataclasses
import os
from typing import Optional

from serde import serde
from serde.json import from_json, to_json


class ConfigError(ValueError):
    pass


@serde
class Config:
    mountpoint: str
    remote: str
    workdir: str = ""
    auth_file: Optional[str] = None
    uid: int = -1
    gid: int = -1
    file_permission: int = 0o644
    dir_permission: int = 0o755
    branch: str = ""
    depth: int = 1
    sync_period: float = 1.0
    quiescence: float = 2.0
    queue_size: int = 100
    max_retries: int = 5
    force_push: bool = True
    allow_other: bool = False
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 0


def load_config(path: str) -> Config:
    with open(path, "r") as f:
        return from_json(Config, f.read())


def save_config(config: Config, path: str) -> None:
    with open(path, "w") as f:
        f.write(to_json(config))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitmount",
        description="Mount a git repository; every change is committed and pushed back.",
    )
    parser.add_argument("mountpoint", nargs="?", help="Directory to mount the repository on")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--git", dest="remote", help="Repository URL to clone")
    parser.add_argument("--uid", type=int, help="Owner uid reported for every entry")
    parser.add_argument("--gid", type=int, help="Owner gid reported for every entry")
    parser.add_argument("--auth", dest="auth_file", help="Private SSH key file, the SSH agent is used otherwise")
    parser.add_argument("--workdir", help="Local checkout directory, a fresh temporary one when empty")
    parser.add_argument("--branch", help="Branch to check out")
    parser.add_argument("--port", type=int, help="Port of the control API, 0 disables it")
    parser.add_argument("--allow-other", dest="allow_other", action="store_true", default=None,
                        help="Let other users access the mount")
    parser.add_argument("--debug", action="store_true", default=None, help="Verbose logging")
    parser.add_argument("--save", action="store_true", help="Write the merged configuration back to --config")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """
    Merge the configuration file (if any) with command line overrides.

    Raises:
        ConfigError: If the mount point or repository URL is missing
    """
    if args.config and os.path.exists(args.config):
        config = load_config(args.config)
    else:
        config = Config(mountpoint="", remote="")

    overrides = {}
    for field in ("mountpoint", "remote", "uid", "gid", "auth_file", "workdir", "branch",
                  "port", "allow_other", "debug"):
        value = getattr(args, field, None)
        if value is not None:
            overrides[field] = value
    config = dataclasses.replace(config, **overrides)

    if not config.mountpoint:
        raise ConfigError("a mount point is required")
    if not config.remote:
        raise ConfigError("a repository URL is required (--git)")

    if args.save:
        if not args.config:
            raise ConfigError("--save needs --config")
        save_config(config, args.config)
    return config
