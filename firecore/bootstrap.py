"""Choice of the reader node bootstrapper and the script-driven bootstrapper."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import textwrap
import urllib.parse
from typing import Callable, Mapping, Protocol, Sequence

from firecore.reader_node import (
    TarballNodeBootstrapper,
    is_bootstrapped,
    reader_node_variables_values,
)

logger = logging.getLogger(__name__)

ReaderNodeArgumentResolver = Callable[[str], str]

BOOTSTRAP_DATA_URL_FLAG = "reader-node-bootstrap-data-url"
READER_NODE_PATH_FLAG = "reader-node-path"
SCRIPT_TIMEOUT = 30 * 60


class _Bootstrapper(Protocol):
    def bootstrap(self) -> None: ...


BootstrapperFactory = Callable[
    [Mapping[str, str], Sequence[str], ReaderNodeArgumentResolver], "_Bootstrapper | None"
]


def default_bootstrap_data_url_flag_description() -> str:
    """Help text of the bootstrap data URL flag."""
    text = textwrap.dedent(
        """
        When specified, if the reader node is empty (e.g. the 'reader-node-data-dir' location doesn't exist
        or has no file within it), the 'reader-node' is bootstrapped from it. The exact bootstrapping
        behavior depends on the URL received.

        If the bootstrap URL is of the form 'bash:///<path/to/script>?<parameters>', the bash script at
        '<path/to/script>' is executed. The script receives the resolved reader node variables as
        environment variables of the form 'READER_NODE_<VARIABLE_NAME>'. The fully resolved node arguments
        (from 'reader-node-arguments') are passed as arguments to the script. Accepted query parameters:

            - arg=<value> | Extra argument to the script, placed before the resolved node arguments
            - env=<key>%%3d<value> | Extra environment variable <key>=<value>, key upper-cased (may repeat)
            - env_<key>=<value> | Extra environment variable <key>=<value>, key upper-cased (may repeat)
            - cwd=<path> | Working directory in which the script runs
            - interpreter=<path> | Interpreter used to run the script
            - interpreter_arg=<arg> | Argument to the interpreter, before the script path (may repeat)

        If the bootstrap URL ends with 'tar.zst' or 'tar.zstd', the archive is read and extracted into the
        'reader-node-data-dir' location. The archive is expected to hold the full content of the
        'reader-node-data-dir' and is expanded as is.
        """
    ).strip("\n")
    return text + "\n"


def variable_name_to_env_name(variable: str) -> str:
    """Environment variable name carrying a reader node variable, e.g. ``{data-dir}``."""
    name = variable.upper().replace("-", "_").strip()
    name = name.removeprefix("{").removesuffix("}")
    return "READER_NODE_" + name


def _stderr_target() -> int | None:
    try:
        return sys.stderr.fileno()
    except (AttributeError, OSError, ValueError):
        return None


class BashNodeBootstrapper:
    """Bootstraps the node data directory by running a script named by a ``bash://`` URL."""

    def __init__(
        self,
        url: str,
        binary_path: str,
        resolver: ReaderNodeArgumentResolver,
        resolved_node_arguments: Sequence[str],
    ) -> None:
        self.url = url
        self.data_dir = resolver("{node-data-dir}")
        self.binary_path = binary_path
        self.resolver = resolver
        self.resolved_node_arguments = list(resolved_node_arguments)

    def bootstrap(self) -> None:
        if is_bootstrapped(self.data_dir):
            return

        logger.info("bootstrapping chain data from bash script %s", self.url)
        try:
            parsed = urllib.parse.urlsplit(self.url)
        except ValueError as err:
            raise ValueError(f"cannot parse bootstrap data URL {self.url!r}: {err}") from err

        if parsed.scheme != "bash":
            raise ValueError(f"unsupported bootstrap data URL scheme {parsed.scheme!r}")

        parameters = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
        interpreter = (parameters.get("interpreter") or [""])[0] or "bash"
        working_directory = (parameters.get("cwd") or [""])[0]

        command = [
            interpreter,
            *parameters.get("interpreter_arg", []),
            self.script_path(parsed),
            *parameters.get("arg", []),
            *self.resolved_node_arguments,
        ]

        env = dict(os.environ)
        extra = [
            *self.script_custom_env(parameters),
            *self.node_variables_to_env(),
            f"READER_NODE_BINARY_PATH={self.binary_path}",
        ]
        for entry in extra:
            key, _, value = entry.partition("=")
            env[key] = value

        # Node output conventionally goes to stderr, so does everything here
        target = _stderr_target()
        try:
            subprocess.run(
                command,
                cwd=working_directory or None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=target,
                stderr=target,
                timeout=SCRIPT_TIMEOUT,
                check=True,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as err:
            raise RuntimeError(f"bootstrap script {shlex.join(command)!r} failed: {err}") from err

    def script_path(self, parsed_url: urllib.parse.SplitResult) -> str:
        """Script path of the URL; ``/./x`` and ``/../x`` become relative paths."""
        path = parsed_url.path
        if path.startswith("/."):
            return path[1:]
        return path

    def script_custom_env(self, parameters: Mapping[str, Sequence[str]]) -> list[str]:
        """``KEY=value`` entries from ``env=<key>=<value>`` and ``env_<key>=<value>`` parameters."""
        out: list[str] = []
        for key, values in parameters.items():
            for value in values:
                if key == "env":
                    name, sep, content = value.partition("=")
                    if not sep:
                        logger.warning("invalid env URL query parameter %s=%s", key, value)
                        continue
                    out.append(f"{name.upper()}={content}")
                if key.startswith("env_"):
                    out.append(f"{key[4:].upper()}={value}")
        return out

    def node_variables_to_env(self) -> list[str]:
        """``READER_NODE_<NAME>=value`` entries for every reader node variable."""
        return [
            f"{variable_name_to_env_name(name)}={value}"
            for name, value in reader_node_variables_values(self.resolver).items()
        ]


def default_reader_node_bootstrapper(override_factory: BootstrapperFactory | None) -> BootstrapperFactory:
    """Factory applying ``override_factory`` first, then the built-in URL handling."""

    def factory(
        flags: Mapping[str, str],
        resolved_node_arguments: Sequence[str],
        resolver: ReaderNodeArgumentResolver,
    ) -> _Bootstrapper | None:
        url = flags.get(BOOTSTRAP_DATA_URL_FLAG, "")
        if not url:
            return None

        node_data_dir = resolver("{node-data-dir}")

        if override_factory is None:
            raise ValueError("override_factory argument must be set")

        try:
            bootstrapper = override_factory(flags, resolved_node_arguments, resolver)
        except Exception as err:
            raise RuntimeError(f"override factory failed: {err}") from err
        if bootstrapper is not None:
            return bootstrapper

        if url.endswith("tar.zst") or url.endswith("tar.zstd"):
            return TarballNodeBootstrapper(url, node_data_dir)
        if url.startswith("bash://"):
            return BashNodeBootstrapper(
                url, flags.get(READER_NODE_PATH_FLAG, ""), resolver, resolved_node_arguments
            )
        raise ValueError(
            f"'{BOOTSTRAP_DATA_URL_FLAG}' config should point to either an archive ending in "
            f"'.tar.zstd' or a 'bash://' script URL, not {url}"
        )

    return factory