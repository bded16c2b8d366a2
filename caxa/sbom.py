"""Software bill of materials for packaged applications.

The SBOM is derived from the already-selected file list, never from a live
tree walk:

- Every ``package.json`` in the file list becomes one component, in discovery
  order, with an ``npm`` package-url.
- Declared direct dependencies are resolved by name against the components of
  the same build. Names that do not resolve are dropped.
- When the interpreter is embedded, a synthetic component describing it is
  placed first.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import dataclasses
import json
import logging
import pathlib
import platform
import sys
import urllib.parse

from caxa.errors import ManifestParseError
from caxa.files import FileEntry


MANIFEST_FILENAME: str = "package.json"
DEFAULT_METADATA_FILENAME: str = "binary-metadata.json"

_RAW_DEPENDENCY_FIELDS: tuple[str, ...] = ("dependencies", "optionalDependencies")


@dataclass(frozen=True, slots=True)
class Component:
    """A packaged software component.

    :ivar group: Namespace (e.g. ``@scope``), empty when absent.
    :ivar name: Package name without namespace.
    :ivar version: Package version.
    :ivar purl: Package-url identifying the component.
    :ivar scope: ``required`` or ``excluded``.
    :ivar src_file: Relative path of the manifest (or binary) it was derived from.
    :ivar component_type: CycloneDX-style component type.
    :ivar author: Normalized author string.
    :ivar description: Free-form description.
    :ivar depends_on_raw: Declared dependency name -> version range.
    """

    group: str
    name: str
    version: str
    purl: str
    scope: str = "required"
    src_file: str | None = None
    component_type: str = "library"
    author: str | None = None
    description: str | None = None
    depends_on_raw: Mapping[str, str] = field(default_factory=dict)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "type": self.component_type,
            "group": self.group,
            "name": self.name,
            "version": self.version,
            "purl": self.purl,
            "scope": self.scope,
        }
        if self.author is not None:
            out["author"] = self.author
        if self.description is not None:
            out["description"] = self.description
        if self.src_file is not None:
            out["properties"] = [{"name": "SrcFile", "value": self.src_file}]
        return out


@dataclass(frozen=True, slots=True)
class DependencyEdge:
    """Resolved dependencies of one component.

    :ivar ref: Package-url of the depending component.
    :ivar depends_on: Package-urls it depends on, in declaration order.
    """

    ref: str
    depends_on: tuple[str, ...]

    def to_json(self) -> dict[str, object]:
        return {"ref": self.ref, "dependsOn": list(self.depends_on)}


@dataclass(frozen=True, slots=True)
class SBOMDocument:
    """Bill of materials for one artifact."""

    parent_component: Component
    components: tuple[Component, ...]
    dependencies: tuple[DependencyEdge, ...]

    def to_json(self) -> dict[str, object]:
        parent: dict[str, object] = self.parent_component.to_json()
        parent.pop("scope", None)
        return {
            "parentComponent": parent,
            "components": [c.to_json() for c in self.components],
            "dependencies": [d.to_json() for d in self.dependencies],
        }

    def write(self, path: pathlib.Path) -> None:
        """Persist the document as JSON.

        :param path: Destination file.
        """

        path.write_text(json.dumps(self.to_json(), indent=2) + "\n", encoding="utf-8")


def npm_purl(*, group: str, name: str, version: str) -> str:
    """Build an ``npm`` package-url.

    >>> npm_purl(group="@scope", name="app", version="2.5.0")
    'pkg:npm/%40scope/app@2.5.0'

    :param group: Namespace, possibly empty.
    :param name: Package name.
    :param version: Package version.
    :returns: Package-url string.
    """

    quoted_name: str = urllib.parse.quote(name, safe="")
    quoted_version: str = urllib.parse.quote(version, safe="")
    if len(group) > 0:
        return f"pkg:npm/{urllib.parse.quote(group, safe='')}/{quoted_name}@{quoted_version}"
    return f"pkg:npm/{quoted_name}@{quoted_version}"


def split_package_name(full_name: str) -> tuple[str, str]:
    """Split ``@scope/name`` into ``("@scope", "name")``.

    :param full_name: Declared package name.
    :returns: ``(group, name)``; group is empty for unscoped names.
    """

    if full_name.startswith("@") is True and "/" in full_name:
        group, _, name = full_name.partition("/")
        return group, name
    return "", full_name


def normalize_author(author: object) -> str | None:
    """Collapse the ``author`` field of a manifest into one string.

    The object form ``{"name", "email", "url"}`` becomes ``name <email> (url)``;
    strings pass through unchanged.

    :param author: Raw ``author`` value.
    :returns: Author string, or ``None``.
    """

    if isinstance(author, str):
        return author
    if isinstance(author, Mapping) is False:
        return None

    parts: list[str] = []
    name: object = author.get("name")
    email: object = author.get("email")
    url: object = author.get("url")
    if isinstance(name, str) and len(name) > 0:
        parts.append(name)
    if isinstance(email, str) and len(email) > 0:
        parts.append(f"<{email}>")
    if isinstance(url, str) and len(url) > 0:
        parts.append(f"({url})")
    if len(parts) == 0:
        return None
    return " ".join(parts)


def parse_manifest(path: pathlib.Path) -> dict[str, object]:
    """Read a ``package.json`` record.

    :param path: Manifest file.
    :returns: Parsed record.
    :raises ManifestParseError: If the file is unreadable or not a JSON object.
    """

    try:
        record: object = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise ManifestParseError(f"Cannot parse {path}: {e}") from e
    if isinstance(record, dict) is False:
        raise ManifestParseError(f"Manifest is not an object: {path}")
    return record


def component_from_manifest(record: Mapping[str, object], *, src_file: str) -> Component | None:
    """Turn a manifest record into a component.

    :param record: Parsed manifest.
    :param src_file: Manifest path relative to the input root.
    :returns: Component, or ``None`` when name or version is missing.
    """

    full_name: object = record.get("name")
    version: object = record.get("version")
    if isinstance(full_name, str) is False or len(full_name) == 0:
        return None
    if isinstance(version, str) is False or len(version) == 0:
        return None

    group, name = split_package_name(full_name)

    raw: dict[str, str] = {}
    for field_name in _RAW_DEPENDENCY_FIELDS:
        declared: object = record.get(field_name)
        if isinstance(declared, Mapping) is False:
            continue
        for dep_name, dep_range in declared.items():
            if isinstance(dep_name, str) and dep_name not in raw:
                raw[dep_name] = str(dep_range)

    scope: str = "required"
    if record.get("dev") is True or record.get("_development") is True:
        scope = "excluded"

    description: object = record.get("description")
    return Component(
        group=group,
        name=name,
        version=version,
        purl=npm_purl(group=group, name=name, version=version),
        scope=scope,
        src_file=src_file,
        author=normalize_author(record.get("author")),
        description=description if isinstance(description, str) else None,
        depends_on_raw=raw,
    )


def runtime_component(*, src_file: str | None = None) -> Component:
    """Describe the interpreter running the build.

    :param src_file: Relative path the interpreter binary is stored at.
    :returns: Synthetic component.
    """

    impl: str = sys.implementation.name
    version: str = platform.python_version()
    return Component(
        group="",
        name=impl,
        version=version,
        purl=f"pkg:generic/{urllib.parse.quote(impl, safe='')}@{urllib.parse.quote(version, safe='')}",
        src_file=src_file,
        component_type="application",
        description=f"{platform.python_implementation()} {version} interpreter",
    )


def parent_component(name: str) -> Component:
    """Build the synthetic component describing the artifact itself.

    :param name: Artifact name (output file name without launcher suffix).
    :returns: Parent component.
    """

    return Component(
        group="",
        name=name,
        version="",
        purl=f"pkg:generic/{urllib.parse.quote(name, safe='')}",
        component_type="application",
    )


def build_sbom(
    entries: Iterable[FileEntry],
    input_root: pathlib.Path,
    *,
    include_runtime: bool,
    parent_name: str,
    runtime_relpath: str | None = None,
    logger: logging.Logger | None = None,
) -> SBOMDocument:
    """Build the SBOM for a packaged file set.

    :param entries: Selected files, in discovery order.
    :param input_root: Directory the entries are relative to.
    :param include_runtime: Whether the interpreter is embedded.
    :param parent_name: Artifact name for the parent component.
    :param runtime_relpath: Where the interpreter is stored in the payload.
    :param logger: Optional logger.
    :returns: SBOM document.
    """

    if logger is None:
        logger = logging.getLogger("caxa")

    parent: Component = parent_component(parent_name)
    components: list[Component] = []
    if include_runtime is True:
        components.append(runtime_component(src_file=runtime_relpath))

    # name -> (manifest depth, purl)
    by_name: dict[str, tuple[int, str]] = {}
    skipped: int = 0
    for entry in entries:
        if entry.is_symlink is True:
            continue
        if pathlib.PurePosixPath(entry.relpath).name != MANIFEST_FILENAME:
            continue
        try:
            record: dict[str, object] = parse_manifest(input_root / entry.relpath)
        except ManifestParseError as e:
            skipped += 1
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"caxa: skipping manifest: {e}")
            continue

        component: Component | None = component_from_manifest(record, src_file=entry.relpath)
        if component is None:
            continue

        full_name: str = f"{component.group}/{component.name}" if component.group else component.name
        depth: int = entry.relpath.count("/")
        known: tuple[int, str] | None = by_name.get(full_name)
        if known is None or depth < known[0]:
            by_name[full_name] = (depth, component.purl)
        components.append(component)

    edges: dict[str, list[str]] = {}
    for component in components:
        resolved: list[str] = []
        for dep_name in component.depends_on_raw:
            hit: tuple[int, str] | None = by_name.get(dep_name)
            if hit is None:
                continue
            purl: str = hit[1]
            if purl == component.purl or purl == parent.purl or purl in resolved:
                continue
            resolved.append(purl)
        if len(resolved) == 0:
            continue
        merged: list[str] = edges.setdefault(component.purl, [])
        for purl in resolved:
            if purl not in merged:
                merged.append(purl)

    logger.info(
        f"caxa: sbom has {len(components)} components, {len(edges)} dependency entries"
        + (f" ({skipped} unreadable manifests skipped)" if skipped > 0 else "")
    )

    return SBOMDocument(
        parent_component=parent,
        components=tuple(_without_raw(c) for c in components),
        dependencies=tuple(DependencyEdge(ref=ref, depends_on=tuple(deps)) for ref, deps in edges.items()),
    )


def _without_raw(component: Component) -> Component:
    if len(component.depends_on_raw) == 0:
        return component
    return dataclasses.replace(component, depends_on_raw={})
