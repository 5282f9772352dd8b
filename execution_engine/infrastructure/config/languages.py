"""
Language runtime descriptors.

Built-in descriptors for the supported languages plus loading of extra or
overriding descriptors from a YAML file, so that adding a language is a
configuration change.
"""

from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from execution_engine.domain.errors import ValidationError
from execution_engine.domain.value_objects import (
    DependencyManifest,
    LanguageDescriptor,
    ResourceLimit,
)
from execution_engine.infrastructure.config.settings import Settings
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

_TUPLE_FIELDS = {
    "run_command",
    "compile_command",
    "install_command",
    "source_extensions",
    "aliases",
    "oom_markers",
}


def base_limits(settings: Settings, **overrides: Any) -> ResourceLimit:
    """ResourceLimit built from the settings defaults."""
    limits = ResourceLimit(
        timeout_seconds=settings.default_timeout_seconds,
        max_memory_mb=settings.default_memory_mb,
        cpu_share=settings.default_cpu_share,
        max_processes=settings.default_max_processes,
        max_output_bytes=settings.max_output_bytes,
    )
    return limits.merge(overrides)


def default_descriptors(settings: Settings) -> Dict[str, LanguageDescriptor]:
    """
    Built-in language descriptors.

    Images are the runner images of the platform; the bwrap and subprocess
    backends ignore them and use the host toolchain.
    """
    descriptors = [
        LanguageDescriptor(
            id="python",
            image="nexusquest-python",
            entry_file_name="main.py",
            source_extensions=(".py",),
            run_command=("python3", "-u", "{main_file}"),
            dependency_manifest=DependencyManifest.REQUIREMENTS,
            install_command=(
                "pip", "install",
                "--no-cache-dir",
                "--disable-pip-version-check",
                "--no-warn-script-location",
                "--target", ".deps",
                "-r", "requirements.txt",
            ),
            run_env={"PYTHONPATH": ".deps:.", "PYTHONUNBUFFERED": "1"},
            aliases=("py", "python3"),
            default_limits=base_limits(settings, max_memory_mb=min(settings.default_memory_mb, 128)),
            oom_markers=("MemoryError", "can't start new thread"),
            rlimit_address_space=False,
        ),
        LanguageDescriptor(
            id="javascript",
            image="nexusquest-javascript",
            entry_file_name="main.js",
            source_extensions=(".js", ".mjs", ".cjs"),
            run_command=("node", "{main_file}"),
            dependency_manifest=DependencyManifest.PACKAGE_JSON,
            install_command=(
                "npm", "install",
                "--no-audit",
                "--no-fund",
                "--legacy-peer-deps",
                "--loglevel=error",
            ),
            aliases=("js", "node", "nodejs"),
            default_limits=base_limits(settings, max_memory_mb=min(settings.default_memory_mb, 128)),
            oom_markers=("JavaScript heap out of memory",),
            rlimit_address_space=False,
        ),
        LanguageDescriptor(
            id="java",
            image="nexusquest-java",
            entry_file_name="Main.java",
            source_extensions=(".java",),
            compile_command=("javac", "-cp", ".:lib/*", "-d", ".", "{sources}"),
            run_command=("java", "-cp", ".:lib/*", "{main_class}"),
            dependency_manifest=DependencyManifest.MAVEN,
            install_command=(
                "mvn", "-q", "-B",
                "dependency:copy-dependencies",
                "-DoutputDirectory=lib",
            ),
            default_limits=base_limits(settings, max_memory_mb=max(settings.default_memory_mb, 256)),
            oom_markers=("java.lang.OutOfMemoryError",),
            rlimit_address_space=False,
        ),
        LanguageDescriptor(
            id="cpp",
            image="nexusquest-cpp",
            entry_file_name="main.cpp",
            source_extensions=(".cpp", ".cc", ".cxx"),
            compile_command=("g++", "-std=c++20", "-O2", "-I.", "-o", "a.out", "{sources}"),
            run_command=("./a.out",),
            aliases=("c++",),
            default_limits=base_limits(settings, max_memory_mb=min(settings.default_memory_mb, 128)),
            oom_markers=("std::bad_alloc", "std::system_error"),
            rlimit_address_space=False,
        ),
        LanguageDescriptor(
            id="go",
            image="nexusquest-go",
            entry_file_name="main.go",
            source_extensions=(".go",),
            compile_command=("go", "build", "-o", "main", "{sources}"),
            run_command=("./main",),
            run_env={"GOCACHE": "{workspace}/.gocache", "GOPATH": "{workspace}/.gopath"},
            aliases=("golang",),
            default_limits=base_limits(settings),
            oom_markers=("runtime: out of memory", "failed to create new OS thread"),
            rlimit_address_space=False,
        ),
    ]
    return {d.id: d for d in descriptors}


def _descriptor_kwargs(raw: Mapping[str, Any], settings: Settings) -> Dict[str, Any]:
    """Convert a YAML mapping into LanguageDescriptor keyword arguments."""
    known = {f.name for f in fields(LanguageDescriptor)}
    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        if key == "limits":
            kwargs["default_limits"] = base_limits(settings, **(value or {}))
            continue
        if key not in known:
            raise ValidationError(f"Unknown language descriptor field: {key}")
        if key in _TUPLE_FIELDS and value is not None:
            value = tuple(str(v) for v in value)
        elif key == "dependency_manifest" and value is not None:
            value = DependencyManifest(value)
        elif key == "run_env":
            value = {str(k): str(v) for k, v in (value or {}).items()}
        kwargs[key] = value
    return kwargs


def load_languages(
    path: Optional[str],
    settings: Settings,
    base: Optional[Dict[str, LanguageDescriptor]] = None,
) -> Dict[str, LanguageDescriptor]:
    """
    Load descriptors from a YAML file on top of the built-in ones.

    File layout:

        languages:
          ruby:
            image: nexusquest-ruby
            entry_file_name: main.rb
            run_command: [ruby, "{main_file}"]
            source_extensions: [.rb]
            limits: {max_memory_mb: 128}

    Entries whose id already exists override only the given fields.

    Args:
        path: YAML file path, None to use only the built-in descriptors
        settings: Settings providing default limits
        base: Descriptors to start from (defaults to the built-in ones)

    Returns:
        Mapping of language id to descriptor
    """
    descriptors = dict(base if base is not None else default_descriptors(settings))
    if not path:
        return descriptors

    try:
        with open(Path(path), "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read languages file {path}: {e}") from e

    entries = document.get("languages") or {}
    if not isinstance(entries, dict):
        raise ValidationError("'languages' must be a mapping of language id to descriptor")

    for language_id, raw in entries.items():
        language_id = str(language_id).lower()
        kwargs = _descriptor_kwargs(raw or {}, settings)
        kwargs.pop("id", None)
        if language_id in descriptors:
            descriptors[language_id] = replace(descriptors[language_id], **kwargs)
            logger.info("Language descriptor overridden", language=language_id)
        else:
            try:
                descriptors[language_id] = LanguageDescriptor(id=language_id, **kwargs)
            except TypeError as e:
                raise ValidationError(f"Incomplete descriptor for {language_id}: {e}") from e
            logger.info("Language descriptor added", language=language_id)

    return descriptors
