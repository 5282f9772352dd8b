"""
Dependency Resolver

Turns a request's package map into a manifest file and an install step that
runs inside the run's own sandbox before compilation.
"""

import json
import re
import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape
from typing import Dict, Mapping, Optional, Sequence

from execution_engine.domain.errors import DependencyInstallError, ValidationError
from execution_engine.domain.value_objects import (
    DependencyManifest,
    InstallPlan,
    LanguageDescriptor,
    SourceFile,
)
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

MANIFEST_FILES = {
    DependencyManifest.REQUIREMENTS: "requirements.txt",
    DependencyManifest.PACKAGE_JSON: "package.json",
    DependencyManifest.MAVEN: "pom.xml",
}

ANY_VERSION = {"", "*", "latest"}

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9@][A-Za-z0-9._/@:+\-\[\],]*$")
_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9.*^~<>=!,+_\- \[\]()]*$")
_REQUIREMENT_SPLIT = re.compile(r"(===|==|>=|<=|~=|!=|>|<)")
_MAVEN_NS = "http://maven.apache.org/POM/4.0.0"


def _validate(dependencies: Mapping[str, str]) -> None:
    for name, version in dependencies.items():
        if not _NAME_PATTERN.match(name or ""):
            raise ValidationError(f"Invalid dependency name: {name!r}")
        if not _VERSION_PATTERN.match(version or ""):
            raise ValidationError(f"Invalid version for {name}: {version!r}")


def _is_any(version: Optional[str]) -> bool:
    return (version or "").strip().lower() in ANY_VERSION


# -- requirements.txt ------------------------------------------------------


def parse_requirements(content: str) -> Dict[str, str]:
    """Parse name/version pairs from a requirements file, skipping comments."""
    parsed: Dict[str, str] = {}
    for line in content.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        parts = _REQUIREMENT_SPLIT.split(line, maxsplit=1)
        name = parts[0].strip()
        if len(parts) == 3:
            operator, version = parts[1], parts[2].strip()
            parsed[name] = version if operator == "==" else f"{operator}{version}"
        else:
            parsed[name] = "*"
    return parsed


def render_requirements(dependencies: Mapping[str, str]) -> str:
    lines = []
    for name, version in dependencies.items():
        version = (version or "").strip()
        if _is_any(version):
            lines.append(name)
        elif version[0] in "<>=!~":
            lines.append(f"{name}{version}")
        else:
            lines.append(f"{name}=={version}")
    return "\n".join(sorted(lines)) + "\n"


# -- package.json ----------------------------------------------------------


def render_package_json(dependencies: Mapping[str, str], existing: Optional[str]) -> str:
    package = {
        "name": "sandbox-project",
        "version": "1.0.0",
        "private": True,
        "dependencies": {},
    }
    if existing:
        try:
            loaded = json.loads(existing)
        except json.JSONDecodeError as e:
            raise ValidationError(f"package.json is not valid JSON: {e}") from e
        if isinstance(loaded, dict):
            package = loaded
    merged = dict(package.get("dependencies") or {})
    for name, version in dependencies.items():
        merged[name] = "*" if _is_any(version) else version
    package["dependencies"] = merged
    return json.dumps(package, indent=2) + "\n"


# -- pom.xml ---------------------------------------------------------------


def parse_pom_dependencies(content: str) -> Dict[str, str]:
    """Extract groupId:artifactId -> version from a pom.xml."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ValidationError(f"pom.xml is not valid XML: {e}") from e
    ns = {"m": _MAVEN_NS} if root.tag.startswith("{") else {}
    prefix = "m:" if ns else ""
    found: Dict[str, str] = {}
    for dependency in root.findall(f"{prefix}dependencies/{prefix}dependency", ns):
        group = dependency.findtext(f"{prefix}groupId", default="", namespaces=ns).strip()
        artifact = dependency.findtext(f"{prefix}artifactId", default="", namespaces=ns).strip()
        version = dependency.findtext(f"{prefix}version", default="", namespaces=ns).strip()
        if group and artifact:
            found[f"{group}:{artifact}"] = version or "*"
    return found


def render_pom(dependencies: Mapping[str, str]) -> str:
    entries = []
    for key in sorted(dependencies):
        if ":" not in key:
            raise ValidationError(f"Maven dependency must be 'groupId:artifactId': {key!r}")
        group, artifact = key.split(":", 1)
        version = dependencies[key]
        version = "[0,)" if _is_any(version) else version
        entries.append(
            "    <dependency>\n"
            f"      <groupId>{escape(group)}</groupId>\n"
            f"      <artifactId>{escape(artifact)}</artifactId>\n"
            f"      <version>{escape(version)}</version>\n"
            "    </dependency>"
        )
    body = "\n".join(entries)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<project xmlns="{_MAVEN_NS}">\n'
        "  <modelVersion>4.0.0</modelVersion>\n"
        "  <groupId>sandbox</groupId>\n"
        "  <artifactId>sandbox-project</artifactId>\n"
        "  <version>1.0.0</version>\n"
        "  <packaging>jar</packaging>\n"
        "  <dependencies>\n"
        f"{body}\n"
        "  </dependencies>\n"
        "</project>\n"
    )


class DependencyResolver:
    """Builds the install plan of a run."""

    def __init__(self, install_timeout_seconds: float = 120):
        self.install_timeout_seconds = install_timeout_seconds

    def resolve(
        self,
        descriptor: LanguageDescriptor,
        dependencies: Mapping[str, str],
        files: Sequence[SourceFile] = (),
    ) -> Optional[InstallPlan]:
        """
        Render the manifest and install command for a run.

        Args:
            descriptor: Language of the run
            dependencies: Package name to version
            files: Workspace files, checked for a manifest the caller supplied

        Returns:
            InstallPlan, or None when there is nothing to install

        Raises:
            DependencyInstallError: If the language has no manifest format
            ValidationError: On malformed names, versions or manifests
        """
        if not dependencies:
            return None

        manifest = descriptor.dependency_manifest
        if manifest is None or not descriptor.install_command:
            raise DependencyInstallError(
                f"Dependencies are not supported for {descriptor.id}"
            )

        _validate(dependencies)
        file_name = MANIFEST_FILES[manifest]
        existing = next((f.content for f in files if f.name == file_name), None)

        if manifest == DependencyManifest.REQUIREMENTS:
            merged = parse_requirements(existing) if existing else {}
            merged.update(dependencies)
            content = render_requirements(merged)
        elif manifest == DependencyManifest.PACKAGE_JSON:
            content = render_package_json(dependencies, existing)
        else:
            merged = parse_pom_dependencies(existing) if existing else {}
            merged.update(dependencies)
            content = render_pom(merged)

        logger.debug(
            "Install plan resolved",
            language=descriptor.id,
            manifest=file_name,
            packages=len(dependencies),
        )
        return InstallPlan(
            manifest=SourceFile(name=file_name, content=content),
            command=tuple(descriptor.install_command),
            timeout_seconds=self.install_timeout_seconds,
        )
