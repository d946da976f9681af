#!/usr/bin/env python3
"""
pygen - transactional package profiles with generations
Single-file implementation:
- Manifests of installed package outputs, changed only through transactions
- Upgrades with numeric-aware version ordering and supersession redirects
- Content-addressed profile builds with hooks and collision checks
- Immutable, numbered profile generations published by atomic symlink switch
- Roll-back, switch-generation and delete-generations with a pattern language
- Per-profile locking, binary cache substitutes, recipe repositories
"""

import argparse
import fcntl
import hashlib
import json
import os
import re
import shutil
import sqlite3
import sys
import tarfile
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import git  # requires GitPython
import requests  # requires requests
import yaml  # requires PyYAML
from packaging import version as pkg_version  # requires packaging

# ==================== Configuration ====================
PYGEN_ROOT = os.environ.get("PYGEN_ROOT", os.path.expanduser("~/.local/share/pygen"))
STORE_ROOT = os.path.join(PYGEN_ROOT, "store")
PROFILE_DIR = os.path.join(PYGEN_ROOT, "profiles")
REPO_CACHE = os.path.join(PYGEN_ROOT, "repos")
DB_PATH = os.path.join(PYGEN_ROOT, "pygen.db")
DEFAULT_PROFILE = os.path.join(PROFILE_DIR, "default")
PACKAGE_PATH = [p for p in os.environ.get("PYGEN_PACKAGE_PATH", "").split(":") if p]
DISK_SPACE_WARNING = os.environ.get("PYGEN_DISK_SPACE_WARNING", "0.05")

MANIFEST_FORMAT_VERSION = 1
MANIFEST_FILE = "manifest.json"

# Ensure directories exist
os.makedirs(STORE_ROOT, exist_ok=True)
os.makedirs(PROFILE_DIR, exist_ok=True)
os.makedirs(REPO_CACHE, exist_ok=True)


# ==================== Utility Functions ====================
def logger(msg, level="INFO"):
    print(f"[{level}] {msg}")


def ensure_dir(path):
    os.makedirs(path, exist_ok=True)


def compute_hash(data: Dict[str, Any]) -> str:
    """SHA256 of canonical JSON."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def format_size(size: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


# ==================== Errors ====================
class PygenError(Exception):
    """Base class for errors reported to the user."""


class ProfileNotFound(PygenError):
    pass


class GenerationNotFound(PygenError):
    pass


class NoMatchingGeneration(PygenError):
    pass


class NonInstallableTarget(PygenError):
    pass


class PackageNotFound(PygenError):
    pass


class BuildFailure(PygenError):
    pass


class UnsupportedPatternSyntax(PygenError):
    pass


# ==================== Database ====================
class Database:
    def __init__(self, db_path=DB_PATH):
        self.conn = sqlite3.connect(db_path)
        self._init_tables()

    def _init_tables(self):
        c = self.conn.cursor()
        c.execute("""
            CREATE TABLE IF NOT EXISTS store_items (
                path TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                output TEXT NOT NULL,
                registered TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS repos (
                name TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                type TEXT DEFAULT 'git'
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS gc_roots (
                path TEXT PRIMARY KEY,
                target TEXT NOT NULL,
                created TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()

    def add_store_item(self, path, name, version, output="out"):
        c = self.conn.cursor()
        c.execute(
            "INSERT OR IGNORE INTO store_items (path, name, version, output) VALUES (?,?,?,?)",
            (path, name, version, output),
        )
        self.conn.commit()

    def get_store_item(self, path):
        c = self.conn.cursor()
        c.execute("SELECT path, name, version, output FROM store_items WHERE path=?", (path,))
        return c.fetchone()

    def add_repo(self, name, url, repo_type="git"):
        c = self.conn.cursor()
        c.execute(
            "INSERT OR REPLACE INTO repos (name, url, type) VALUES (?,?,?)", (name, url, repo_type)
        )
        self.conn.commit()

    def list_repos(self):
        c = self.conn.cursor()
        c.execute("SELECT name, url FROM repos")
        return c.fetchall()

    def add_gc_root(self, path, target):
        c = self.conn.cursor()
        c.execute("INSERT OR REPLACE INTO gc_roots (path, target) VALUES (?,?)", (path, target))
        self.conn.commit()

    def remove_gc_root(self, path):
        c = self.conn.cursor()
        c.execute("DELETE FROM gc_roots WHERE path=?", (path,))
        self.conn.commit()

    def list_gc_roots(self):
        c = self.conn.cursor()
        c.execute("SELECT path, target FROM gc_roots ORDER BY path")
        return c.fetchall()


# ==================== Versions ====================
def _version_components(ver_str: str):
    return [
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.findall(r"\d+|[A-Za-z]+", ver_str)
    ]


def version_compare(a: str, b: str) -> int:
    """Compare two version strings numerically; returns -1, 0 or 1."""
    try:
        va, vb = pkg_version.parse(a), pkg_version.parse(b)
    except pkg_version.InvalidVersion:
        va, vb = _version_components(a), _version_components(b)
    return (va > vb) - (va < vb)


def version_prefix_matches(requested: str, ver_str: str) -> bool:
    return ver_str == requested or ver_str.startswith(requested + ".")


# ==================== Packages ====================
SEARCH_PATH_FILE_TYPES = ("directory", "regular")


@dataclass(frozen=True)
class SearchPath:
    """An environment variable a package expects to point into the profile."""

    variable: str
    files: Tuple[str, ...]
    separator: str = ":"
    file_type: str = "directory"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchPath":
        file_type = data.get("file_type", "directory")
        if file_type not in SEARCH_PATH_FILE_TYPES:
            raise UnsupportedPatternSyntax(
                f"unsupported file type '{file_type}' in search path {data.get('variable')}"
            )
        return cls(
            variable=data["variable"],
            files=tuple(data.get("files", [])),
            separator=data.get("separator", ":"),
            file_type=file_type,
        )

    def to_dict(self):
        return {
            "variable": self.variable,
            "files": list(self.files),
            "separator": self.separator,
            "file_type": self.file_type,
        }

    def existing_files(self, root: str) -> List[str]:
        """Entries of `files` that exist below `root` with the expected type."""
        check = os.path.isdir if self.file_type == "directory" else os.path.isfile
        return [f for f in self.files if check(os.path.join(root, f))]


class Package:
    def __init__(self, data: Dict[str, Any]):
        self.name = data["name"]
        if not isinstance(data["version"], str):
            # an unquoted YAML 1.10 has already become the float 1.1
            raise PygenError(
                f"version of package '{self.name}' must be a quoted string, got {data['version']!r}"
            )
        self.version = data["version"]
        self.source = data.get("source", {})
        self.outputs = list(data.get("outputs", ["out"]))
        self.items = dict(data.get("items", {}))
        self.superseded_by = data.get("superseded_by")
        self.search_paths = [SearchPath.from_dict(s) for s in data.get("search_paths", [])]
        self.synopsis = data.get("synopsis", "")
        self.description = data.get("description", "")
        # YAML dates and the like are kept as their string form
        self.properties = json.loads(json.dumps(data.get("properties") or {}, default=str))
        self._validate()

    def _validate(self):
        assert self.name, "Package name must not be empty"
        assert self.outputs, f"Package {self.name} declares no outputs"
        for output in self.items:
            assert output in self.outputs, f"Item given for undeclared output '{output}'"

    def to_dict(self):
        return {
            "name": self.name,
            "version": self.version,
            "source": self.source,
            "outputs": self.outputs,
            "items": self.items,
            "superseded_by": self.superseded_by,
            "search_paths": [s.to_dict() for s in self.search_paths],
            "synopsis": self.synopsis,
            "description": self.description,
            "properties": self.properties,
        }

    def with_source(self, source: Dict[str, Any]) -> "Package":
        data = self.to_dict()
        data["source"] = source
        data["items"] = {}
        return Package(data)

    def item(self, output: str = "out") -> str:
        """Store path of `output`: explicit, or derived from the recipe's content."""
        if output in self.items:
            return self.items[output]
        digest = compute_hash({"package": self.to_dict(), "output": output})[:32]
        suffix = "" if output == "out" else f"-{output}"
        return os.path.join(STORE_ROOT, f"{digest}-{self.name}-{self.version}{suffix}")

    def default_output(self) -> str:
        return "out" if "out" in self.outputs else self.outputs[0]

    def __repr__(self):
        return f"<Package {self.name}@{self.version}>"


def load_package_file(path: str) -> Package:
    with open(path) as f:
        data = yaml.safe_load(f)
    return Package(data)


def find_packages_in_dir(directory: str) -> List[Package]:
    packages = []
    for root, dirs, files in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d != ".git")
        for file in sorted(files):
            if file.endswith((".yaml", ".yml")):
                try:
                    packages.append(load_package_file(os.path.join(root, file)))
                except (OSError, yaml.YAMLError, KeyError, TypeError, AssertionError, PygenError) as e:
                    logger(f"Could not load {file}: {e}", "WARNING")
    return packages


# ==================== Package Index ====================
class PackageIndex:
    def __init__(self, packages_by_name: Dict[str, List[Package]]):
        self.packages_by_name = packages_by_name

    @classmethod
    def from_packages(cls, packages: List[Package]) -> "PackageIndex":
        by_name: Dict[str, List[Package]] = {}
        for p in packages:
            by_name.setdefault(p.name, []).append(p)
        return cls(by_name)

    def all_packages(self) -> List[Package]:
        return [p for name in sorted(self.packages_by_name) for p in self.find_packages(name)]

    def find_packages(self, name: str, version: Optional[str] = None) -> List[Package]:
        """Packages called `name`, newest first; equal versions keep load order."""
        candidates = [
            p
            for p in self.packages_by_name.get(name, [])
            if version is None or version_prefix_matches(version, p.version)
        ]
        return sorted(candidates, key=cmp_to_key(lambda a, b: version_compare(b.version, a.version)))

    def lookup_best(self, name: str, version: Optional[str] = None) -> Optional[Package]:
        found = self.find_packages(name, version)
        return found[0] if found else None

    def is_superseded(self, package: Package) -> Optional[Package]:
        if not package.superseded_by:
            return None
        return self.lookup_best(package.superseded_by)

    def rank(self, package: Package, regexps: List[str]) -> int:
        """Relevance of `package` for `regexps`; 0 unless every regexp matches somewhere."""
        score = 0
        for regexp in regexps:
            pattern = re.compile(regexp, re.IGNORECASE)
            hits = (
                4 * len(pattern.findall(package.name))
                + 2 * len(pattern.findall(package.synopsis))
                + len(pattern.findall(package.description))
            )
            if not hits:
                return 0
            score += hits
        return score

    def search(self, regexps: List[str]) -> List[Tuple[Package, int]]:
        scored = [(p, self.rank(p, regexps)) for p in self.all_packages()]
        scored = [(p, s) for p, s in scored if s > 0]
        scored.sort(key=lambda ps: (-ps[1], ps[0].name))
        return scored


# ==================== Repo Manager ====================
class RepoManager:
    def __init__(self, db):
        self.db = db
        ensure_dir(REPO_CACHE)

    def add_repo(self, name, url):
        dest = os.path.join(REPO_CACHE, name)
        if os.path.exists(dest):
            logger(f"Repo {name} already exists, updating...")
            repo = git.Repo(dest)
            repo.remotes.origin.pull()
        else:
            logger(f"Cloning repo {url} to {dest}")
            git.Repo.clone_from(url, dest)
        self.db.add_repo(name, url)

    def list_packages(self) -> List[Package]:
        packages = []
        for repo_name in sorted(os.listdir(REPO_CACHE)):
            repo_path = os.path.join(REPO_CACHE, repo_name)
            if os.path.isdir(repo_path):
                packages.extend(find_packages_in_dir(repo_path))
        for directory in PACKAGE_PATH:
            if os.path.isdir(directory):
                packages.extend(find_packages_in_dir(directory))
            else:
                logger(f"Package directory {directory} does not exist", "WARNING")
        return packages

    def index(self) -> PackageIndex:
        return PackageIndex.from_packages(self.list_packages())


# ==================== Manifest ====================
@dataclass(frozen=True)
class ManifestEntry:
    name: str
    version: str
    output: str
    item: str
    search_paths: Tuple[SearchPath, ...] = ()
    properties: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.output)

    @classmethod
    def from_package(cls, package: Package, output: str = "out") -> "ManifestEntry":
        return cls(
            name=package.name,
            version=package.version,
            output=output,
            item=package.item(output),
            search_paths=tuple(package.search_paths),
            properties=dict(package.properties),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            name=data["name"],
            version=data["version"],
            output=data.get("output", "out"),
            item=data["item"],
            search_paths=tuple(SearchPath.from_dict(s) for s in data.get("search_paths", [])),
            properties=dict(data.get("properties", {})),
        )

    def to_dict(self):
        return {
            "name": self.name,
            "version": self.version,
            "output": self.output,
            "item": self.item,
            "search_paths": [s.to_dict() for s in self.search_paths],
            "properties": self.properties,
        }

    def spec(self) -> str:
        suffix = "" if self.output == "out" else f":{self.output}"
        return f"{self.name}@{self.version}{suffix}"


@dataclass(frozen=True)
class ManifestPattern:
    name: str
    version: Optional[str] = None
    output: Optional[str] = None

    def matches(self, entry: ManifestEntry) -> bool:
        return (
            entry.name == self.name
            and (self.version is None or entry.version == self.version)
            and (self.output is None or entry.output == self.output)
        )


class Manifest:
    """Ordered entries of a profile, most recently installed last."""

    def __init__(self, entries=None):
        self.entries: List[ManifestEntry] = list(entries or [])

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)

    def __eq__(self, other):
        return isinstance(other, Manifest) and self.entries == other.entries

    def __repr__(self):
        return f"<Manifest {[e.spec() for e in self.entries]}>"

    def lookup(self, name: str, output: str = "out") -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.key == (name, output):
                return entry
        return None

    def matching(self, pattern: ManifestPattern) -> List[ManifestEntry]:
        return [e for e in self.entries if pattern.matches(e)]

    def search_paths(self) -> List[SearchPath]:
        seen = {}
        for entry in self.entries:
            for sp in entry.search_paths:
                seen.setdefault(sp.variable, sp)
        return list(seen.values())

    def to_dict(self):
        return {"version": MANIFEST_FORMAT_VERSION, "entries": [e.to_dict() for e in self.entries]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        if data.get("version") != MANIFEST_FORMAT_VERSION:
            raise PygenError(f"unsupported manifest format version {data.get('version')!r}")
        return cls(ManifestEntry.from_dict(e) for e in data.get("entries", []))

    def save(self, path):
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    @classmethod
    def load(cls, path) -> "Manifest":
        with open(path) as f:
            return cls.from_dict(json.load(f))


_SPEC_RE = re.compile(r"^([^@:/\s]+)(?:@([^:\s]+))?(?::([^@:\s]+))?$")


def parse_package_spec(spec: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Split `name[@version][:output]`."""
    match = _SPEC_RE.match(spec.strip())
    if not match:
        raise PygenError(f"invalid package specification '{spec}'")
    return match.group(1), match.group(2), match.group(3)


# ==================== Transaction ====================
class ManifestTransaction:
    def __init__(self, install=None, remove=None):
        self.install: List[ManifestEntry] = list(install or [])
        self.remove: List[ManifestPattern] = list(remove or [])

    @classmethod
    def from_manifest(cls, manifest: Manifest) -> "ManifestTransaction":
        return cls(install=manifest.entries)

    def union(self, other: "ManifestTransaction") -> "ManifestTransaction":
        return ManifestTransaction(self.install + other.install, self.remove + other.remove)

    def is_empty(self) -> bool:
        return not self.install and not self.remove

    def removes(self, entry: ManifestEntry) -> bool:
        return any(p.matches(entry) for p in self.remove)

    def __eq__(self, other):
        return (
            isinstance(other, ManifestTransaction)
            and self.install == other.install
            and self.remove == other.remove
        )

    def __repr__(self):
        return (
            f"<ManifestTransaction install={[e.spec() for e in self.install]} "
            f"remove={self.remove}>"
        )


def manifest_perform_transaction(manifest: Manifest, transaction: ManifestTransaction) -> Manifest:
    """Return the manifest resulting from applying `transaction` to `manifest`."""
    entries = [e for e in manifest if not transaction.removes(e)]
    for new in transaction.install:
        # an updated entry moves to the most recent position
        entries = [e for e in entries if e.key != new.key]
        entries.append(new)
    return Manifest(entries)


def describe_changes(old: Manifest, new: Manifest):
    old_by_key = {e.key: e for e in old}
    new_by_key = {e.key: e for e in new}
    for entry in old:
        if entry.key not in new_by_key:
            logger(f"removing {entry.spec()}")
    for entry in new:
        previous = old_by_key.get(entry.key)
        if previous is None:
            logger(f"installing {entry.spec()}")
        elif previous != entry:
            logger(f"upgrading {previous.spec()} -> {entry.version}")


# ==================== Transformations ====================
def options_to_transformation(with_source: List[str]) -> Callable[[Package], Package]:
    replacements = {}
    for spec in with_source or []:
        name, sep, uri = spec.partition("=")
        if not sep or not name or not uri:
            raise PygenError(f"invalid source replacement '{spec}', expected PACKAGE=URI")
        replacements[name] = uri

    def transform(package: Package) -> Package:
        uri = replacements.get(package.name)
        if uri is None:
            return package
        return package.with_source({"type": "url", "uri": uri})

    return transform


def identity(package: Package) -> Package:
    return package


# ==================== Upgrade Resolver ====================
class BuildRequired(Exception):
    """Lowering would need an item that is not in the store yet."""


def lower_entry(package: Package, output: str) -> ManifestEntry:
    """Resolve `package` to its store entry without building anything."""
    item = package.item(output)
    if not os.path.exists(item):
        raise BuildRequired(item)
    return ManifestEntry.from_package(package, output)


def resolve_superseding(index: PackageIndex, package: Package) -> Package:
    """Follow supersession redirects of `package` until a fixed point."""
    seen = {package.name}
    current = package
    while True:
        replacement = index.is_superseded(current)
        if replacement is None:
            return current
        if replacement.name in seen:
            logger(
                f"supersession of '{current.name}' loops back to '{replacement.name}', ignoring",
                "WARNING",
            )
            return current
        seen.add(replacement.name)
        current = replacement


def upgrade_predicate(upgrade_regexps, do_not_upgrade_regexps=()) -> Callable[[str], bool]:
    try:
        upgrade = [re.compile(r) for r in upgrade_regexps]
        keep = [re.compile(r) for r in do_not_upgrade_regexps]
    except re.error as e:
        raise PygenError(f"invalid regular expression: {e}")

    def predicate(name: str) -> bool:
        return any(r.search(name) for r in upgrade) and not any(r.search(name) for r in keep)

    return predicate


def resolve_upgrade(
    entry: ManifestEntry,
    predicate: Callable[[str], bool],
    index: PackageIndex,
    transform: Callable[[Package], Package] = identity,
    transaction: Optional[ManifestTransaction] = None,
) -> ManifestTransaction:
    """Return the transaction delta that upgrades `entry`, possibly empty."""
    if not predicate(entry.name):
        return ManifestTransaction()
    if transaction is not None and transaction.removes(entry):
        return ManifestTransaction()

    found = index.lookup_best(entry.name)
    if found is None:
        logger(f"package '{entry.name}' no longer exists", "WARNING")
        return ManifestTransaction()
    candidate = transform(found)

    target = resolve_superseding(index, candidate)
    if target is not candidate:
        target = transform(target)
        if entry.output not in target.outputs:
            logger(f"'{target.name}' has no output '{entry.output}', keeping {entry.spec()}", "WARNING")
            return ManifestTransaction()
        logger(f"package '{entry.name}' has been superseded by '{target.name}'")
        return ManifestTransaction(
            install=[ManifestEntry.from_package(target, entry.output)],
            remove=[ManifestPattern(entry.name, entry.version, entry.output)],
        )

    if entry.output not in candidate.outputs:
        logger(f"package '{entry.name}' no longer has output '{entry.output}'", "WARNING")
        return ManifestTransaction()

    order = version_compare(candidate.version, entry.version)
    if order < 0:
        return ManifestTransaction()
    if order > 0:
        return ManifestTransaction(install=[ManifestEntry.from_package(candidate, entry.output)])

    try:
        lowered = lower_entry(candidate, entry.output)
    except BuildRequired:
        # assume the rebuilt item differs rather than building it to find out
        return ManifestTransaction(install=[ManifestEntry.from_package(candidate, entry.output)])
    if lowered.item == entry.item:
        return ManifestTransaction()
    return ManifestTransaction(install=[lowered])


# ==================== Binary Cache ====================
class BinaryCache:
    def __init__(self, cache_url=None):
        self.cache_url = cache_url

    def fetch(self, item):
        """Substitute store `item` from the cache; returns True on success."""
        if not self.cache_url:
            return False
        store_hash = os.path.basename(item).split("-")[0]
        url = urljoin(self.cache_url, f"{store_hash}.tar.gz")
        try:
            resp = requests.get(url, stream=True, timeout=10)
            if resp.status_code != 200:
                return False
            logger(f"Downloading substitute for {item}")
            with tempfile.TemporaryFile() as f:
                for chunk in resp.iter_content(chunk_size=8192):
                    f.write(chunk)
                f.seek(0)
                with tempfile.TemporaryDirectory(dir=STORE_ROOT, prefix=".substitute-") as tmpdir:
                    unpacked = os.path.join(tmpdir, "unpacked")
                    os.makedirs(unpacked)
                    with tarfile.open(fileobj=f, mode="r:gz") as tar:
                        tar.extractall(path=unpacked, filter="data")
                    names = os.listdir(unpacked)
                    tree = unpacked
                    if len(names) == 1 and os.path.isdir(os.path.join(unpacked, names[0])):
                        tree = os.path.join(unpacked, names[0])
                    try:
                        os.rename(tree, item)
                    except OSError:
                        # substituted concurrently by another profile
                        if not os.path.isdir(item):
                            raise
            return True
        except (requests.RequestException, tarfile.TarError, OSError) as e:
            logger(f"Cache fetch failed: {e}", "WARNING")
            return False


# ==================== Builder ====================
def _replace_file(path, content):
    if os.path.lexists(path):
        os.unlink(path)
    with open(path, "w") as f:
        f.write(content)


def info_dir_hook(root, drv):
    """Write share/info/dir indexing the Info manuals in the profile."""
    info = os.path.join(root, "share", "info")
    if os.path.islink(info) or not os.path.isdir(info):
        return
    manuals = sorted(f[: -len(".info")] for f in os.listdir(info) if f.endswith(".info"))
    lines = ["This is the Info directory of the profile.", "", "* Menu:", ""]
    lines += [f"* {name}: ({name})." for name in manuals]
    _replace_file(os.path.join(info, "dir"), "\n".join(lines) + "\n")


def etc_profile_hook(root, drv):
    """Write etc/profile exporting the search paths of the manifest."""
    lines = []
    for sp in drv.manifest.search_paths():
        files = sp.existing_files(root)
        if not files:
            continue
        value = sp.separator.join(os.path.join(drv.output_path, f) for f in files)
        var = sp.variable
        lines.append(f'export {var}="{value}${{{var}:+{sp.separator}}}${var}"')
    if drv.locale and os.path.isdir(os.path.join(root, "lib", "locale")):
        lines.append(f'export PYGEN_LOCPATH="{drv.output_path}/lib/locale"')
    etc = os.path.join(root, "etc")
    if os.path.islink(etc):
        os.unlink(etc)
    ensure_dir(etc)
    _replace_file(os.path.join(etc, "profile"), "\n".join(lines) + "\n")


PROFILE_HOOKS = {
    "info-dir": info_dir_hook,
    "etc-profile": etc_profile_hook,
}
DEFAULT_HOOKS = ("info-dir", "etc-profile")


class Derivation:
    """A profile build request; its output path is known before building."""

    def __init__(self, manifest: Manifest, hooks=DEFAULT_HOOKS, locale=True):
        self.manifest = manifest
        self.hooks = list(hooks)
        self.locale = locale
        self.hash = compute_hash(
            {"manifest": manifest.to_dict(), "hooks": self.hooks, "locale": locale}
        )[:32]
        self.output_path = os.path.join(STORE_ROOT, f"{self.hash}-profile")


def union_item(root, item, allow_collisions=False):
    """Symlink every file of `item` into `root`, creating real directories."""
    for dirpath, dirnames, filenames in os.walk(item):
        rel = os.path.relpath(dirpath, item)
        target_dir = root if rel == "." else os.path.join(root, rel)
        if os.path.islink(target_dir) or (os.path.lexists(target_dir) and not os.path.isdir(target_dir)):
            raise BuildFailure(f"collision: {rel} is a file in one entry and a directory in {item}")
        ensure_dir(target_dir)
        linked = filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
        dirnames[:] = [d for d in dirnames if d not in linked]
        for name in linked:
            src = os.path.join(dirpath, name)
            dst = os.path.join(target_dir, name)
            if os.path.lexists(dst):
                owner = os.readlink(dst) if os.path.islink(dst) else "another entry"
                msg = f"collision: {os.path.relpath(dst, root)} provided by {owner} and {src}"
                if allow_collisions:
                    logger(msg, "WARNING")
                    continue
                raise BuildFailure(msg)
            os.symlink(src, dst)


class Builder:
    def __init__(self, db, cache=None):
        self.db = db
        self.cache = cache or BinaryCache()

    def submit(self, manifest: Manifest, hooks=DEFAULT_HOOKS, locale=True) -> Derivation:
        for name in hooks:
            if name not in PROFILE_HOOKS:
                raise BuildFailure(f"unknown profile hook '{name}'")
        return Derivation(manifest, hooks=hooks, locale=locale)

    def _ensure_item(self, entry: ManifestEntry):
        if not os.path.exists(entry.item):
            if not self.cache.fetch(entry.item):
                raise BuildFailure(
                    f"{entry.spec()}: store item {entry.item} is not available"
                )
        self.db.add_store_item(entry.item, entry.name, entry.version, entry.output)

    def realize(self, drv: Derivation, allow_collisions=False) -> str:
        if os.path.isdir(drv.output_path):
            logger(f"Profile already exists in store: {drv.output_path}")
            return drv.output_path
        for entry in drv.manifest:
            self._ensure_item(entry)

        logger(f"Building profile {drv.output_path}")
        with tempfile.TemporaryDirectory(dir=STORE_ROOT, prefix=".build-") as build_dir:
            root = os.path.join(build_dir, "profile")
            os.makedirs(root)
            for entry in drv.manifest:
                if os.path.isdir(entry.item):
                    union_item(root, entry.item, allow_collisions)
                else:
                    logger(f"{entry.item} is not a directory, skipping", "WARNING")
            for name in drv.hooks:
                PROFILE_HOOKS[name](root, drv)
            manifest_path = os.path.join(root, MANIFEST_FILE)
            if os.path.lexists(manifest_path):
                os.unlink(manifest_path)
            drv.manifest.save(manifest_path)
            try:
                os.rename(root, drv.output_path)
            except OSError as e:
                # another process may have built the same profile meanwhile
                if not os.path.isdir(drv.output_path):
                    raise BuildFailure(f"could not add {drv.output_path} to the store: {e}")
        self.db.add_store_item(drv.output_path, "profile", drv.hash, "out")
        return drv.output_path


# ==================== Profile ====================
DURATION_UNITS = {"s": 1, "h": 3600, "d": 86400, "w": 7 * 86400, "m": 30 * 86400}


def string_to_duration(text: str) -> Optional[int]:
    """Seconds in a duration such as `2h`, `10d`, `2w` or `3m`."""
    match = re.match(r"^(\d+)([shdwm])$", text)
    if not match:
        return None
    return int(match.group(1)) * DURATION_UNITS[match.group(2)]


class Profile:
    """A profile pointer and its numbered generation links."""

    def __init__(self, path=DEFAULT_PROFILE):
        self.path = os.path.abspath(path)
        self.dir = os.path.dirname(self.path)
        self.base = os.path.basename(self.path)
        self._link_re = re.compile(rf"^{re.escape(self.base)}-(\d+)-(\d+)-link$")

    def exists(self):
        return os.path.lexists(self.path)

    def require(self):
        if not self.exists():
            raise ProfileNotFound(f"profile '{self.path}' does not exist")

    def is_default(self):
        return self.path == os.path.abspath(DEFAULT_PROFILE)

    def _generation_links(self) -> Dict[int, List[Tuple[int, str]]]:
        links: Dict[int, List[Tuple[int, str]]] = {}
        if not os.path.isdir(self.dir):
            return links
        for name in os.listdir(self.dir):
            match = self._link_re.match(name)
            if match:
                links.setdefault(int(match.group(1)), []).append((int(match.group(2)), name))
        for entries in links.values():
            entries.sort()
        return links

    def generation_numbers(self) -> List[int]:
        """Existing generations, oldest first; the empty generation 0 is not listed."""
        return sorted(n for n in self._generation_links() if n > 0)

    def generation_link(self, number) -> Optional[str]:
        entries = self._generation_links().get(number)
        if not entries:
            return None
        return os.path.join(self.dir, entries[-1][1])

    def generation_time(self, number) -> int:
        entries = self._generation_links().get(number)
        if not entries:
            raise GenerationNotFound(f"generation {number} does not exist")
        return entries[-1][0]

    def generation_manifest(self, number) -> Manifest:
        link = self.generation_link(number)
        if link is None:
            raise GenerationNotFound(f"generation {number} does not exist")
        path = os.path.join(link, MANIFEST_FILE)
        return Manifest.load(path) if os.path.isfile(path) else Manifest()

    def current_number(self) -> int:
        try:
            target = os.readlink(self.path)
        except OSError:
            return 0
        match = self._link_re.match(os.path.basename(target))
        return int(match.group(1)) if match else 0

    def next_number(self) -> int:
        return self.current_number() + 1

    def previous_number(self) -> int:
        current = self.current_number()
        older = [n for n in self.generation_numbers() if n < current]
        return older[-1] if older else 0

    def relative_number(self, offset: int) -> Optional[int]:
        """The generation `offset` positions away from the current one."""
        numbers = self.generation_numbers()
        current = self.current_number()
        if current not in numbers:
            return None
        position = numbers.index(current) + offset
        if 0 <= position < len(numbers):
            return numbers[position]
        return None

    def current_target(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        return os.path.realpath(self.path)

    def manifest(self) -> Manifest:
        target = self.current_target()
        if target is None:
            return Manifest()
        path = os.path.join(target, MANIFEST_FILE)
        return Manifest.load(path) if os.path.isfile(path) else Manifest()

    def _switch_pointer(self, link_name):
        tmp_link = f"{self.path}.new-{os.getpid()}"
        if os.path.lexists(tmp_link):
            os.unlink(tmp_link)
        os.symlink(link_name, tmp_link)
        os.replace(tmp_link, self.path)

    def publish(self, number, target) -> str:
        """Create generation `number` pointing at `target` and make it current."""
        ensure_dir(self.dir)
        for _, name in self._generation_links().get(number, []):
            # left over from before a roll-back
            os.unlink(os.path.join(self.dir, name))
        link_name = f"{self.base}-{number}-{int(time.time())}-link"
        os.symlink(target, os.path.join(self.dir, link_name))
        self._switch_pointer(link_name)
        return os.path.join(self.dir, link_name)

    def switch_to_generation(self, number):
        link = self.generation_link(number)
        if link is None:
            raise GenerationNotFound(f"generation {number} of profile '{self.path}' does not exist")
        previous = self.current_number()
        self._switch_pointer(os.path.basename(link))
        logger(f"switched from generation {previous} to {number}")

    def select(self, pattern=None, for_deletion=False, now=None) -> Optional[List[int]]:
        """
        Generations matching `pattern`, oldest first, or None when nothing matched.

        An empty pattern selects every generation, or every generation but the
        current one when selecting for deletion.
        """
        numbers = self.generation_numbers()
        current = self.current_number()
        pattern = (pattern or "").strip()
        if not pattern:
            return [n for n in numbers if n != current] if for_deletion else numbers
        if for_deletion and pattern == "0":
            return []

        if re.fullmatch(r"\d+(,\d+)*", pattern):
            wanted = {int(n) for n in pattern.split(",")}
            selected = [n for n in numbers if n in wanted]
        elif re.fullmatch(r"(\d*)\.\.(\d*)", pattern) and pattern != "..":
            low, high = pattern.split("..")
            low = int(low) if low else 0
            high = int(high) if high else None
            if high is not None and high < low:
                raise UnsupportedPatternSyntax(f"invalid generation range '{pattern}'")
            selected = [n for n in numbers if n >= low and (high is None or n <= high)]
        elif re.fullmatch(r"[+-]\d+", pattern):
            if not numbers:
                return None
            target = min(max(current + int(pattern), numbers[0]), numbers[-1])
            selected = [n for n in numbers if n == target]
        else:
            duration = string_to_duration(pattern)
            if duration is None:
                raise UnsupportedPatternSyntax(f"invalid generation pattern '{pattern}'")
            now = time.time() if now is None else now
            if for_deletion:
                selected = [n for n in numbers if self.generation_time(n) < now - duration]
            else:
                midnight = datetime.fromtimestamp(now).replace(
                    hour=0, minute=0, second=0, microsecond=0
                ).timestamp()
                selected = [n for n in numbers if self.generation_time(n) >= midnight - duration]
        return selected or None

    def delete(self, numbers, db=None) -> List[int]:
        """Delete generation links; generation 0 and the current one are kept."""
        current = self.current_number()
        deleted = []
        for number in numbers:
            if number == 0:
                continue
            if number == current:
                logger(f"not removing generation {number}, which is current", "WARNING")
                continue
            links = self._generation_links().get(number, [])
            for _, name in links:
                path = os.path.join(self.dir, name)
                logger(f"deleting {path}")
                os.unlink(path)
                if db is not None:
                    db.remove_gc_root(path)
            if links:
                deleted.append(number)
        return deleted


# ==================== Profile Lock ====================
@contextmanager
def profile_lock(profile_path):
    """Hold an exclusive lock on the profile for the duration of the block."""
    lock_path = os.path.abspath(profile_path) + ".lock"
    ensure_dir(os.path.dirname(lock_path))
    with open(lock_path, "w", encoding="utf-8") as f:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            logger(f"waiting for lock on {lock_path}...")
            fcntl.flock(f, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


# ==================== Profile Builder ====================
NOTHING_TO_DO = "nothing-to-do"
DRY_RUN = "dry-run"
PUBLISHED = "published"


@dataclass
class BuildResult:
    outcome: str
    number: Optional[int] = None
    target: Optional[str] = None


def display_search_path_hints(profile: Profile, manifest: Manifest):
    hints = []
    for sp in manifest.search_paths():
        files = sp.existing_files(profile.path)
        if not files:
            continue
        paths = [os.path.join(profile.path, f) for f in files]
        current = os.environ.get(sp.variable, "").split(sp.separator)
        if all(p in current for p in paths):
            continue
        hints.append(f'export {sp.variable}="{sp.separator.join(paths)}"')
    if hints:
        logger("Consider setting the necessary environment variables by running:", "HINT")
        for hint in hints:
            logger(f"    {hint}", "HINT")
        logger(f'Alternately, see `. "{profile.path}/etc/profile"`.', "HINT")


def disk_space_threshold(total: int) -> float:
    try:
        value = float(DISK_SPACE_WARNING)
    except ValueError:
        logger(f"invalid disk space warning threshold '{DISK_SPACE_WARNING}'", "WARNING")
        value = 0.05
    return value * total if value < 1 else value


def warn_about_disk_space(path=None):
    path = path or STORE_ROOT
    usage = shutil.disk_usage(path)
    if usage.free < disk_space_threshold(usage.total):
        logger(f"only {format_size(usage.free)} of free space available on {path}", "WARNING")


def build_and_publish(
    session, profile: Profile, manifest: Manifest, dry_run=False, allow_collisions=False, bootstrap=False
) -> BuildResult:
    """Build `manifest` and make it the next generation of `profile` if it changed."""
    hooks = () if bootstrap else DEFAULT_HOOKS
    drv = session.builder.submit(manifest, hooks=hooks, locale=not bootstrap)
    if os.path.realpath(drv.output_path) == profile.current_target():
        logger("nothing to be done")
        return BuildResult(NOTHING_TO_DO, profile.current_number(), drv.output_path)
    if dry_run:
        logger(f"would build {drv.output_path} as generation {profile.next_number()}")
        return BuildResult(DRY_RUN, profile.next_number(), drv.output_path)

    target = session.builder.realize(drv, allow_collisions=allow_collisions)
    number = profile.next_number()
    link = profile.publish(number, target)
    # the default profile is already rooted through PROFILE_DIR
    if not profile.is_default():
        session.db.add_gc_root(link, target)
    logger(f"created generation {number} of {profile.path}")
    display_search_path_hints(profile, manifest)
    warn_about_disk_space()
    return BuildResult(PUBLISHED, number, target)


# ==================== Session ====================
class Session:
    """Per-invocation handle on the database, build service and package index."""

    def __init__(self, db_path=DB_PATH, cache_url=None, index=None):
        self.db = Database(db_path)
        self.cache = BinaryCache(cache_url)
        self.builder = Builder(self.db, self.cache)
        self._index = index

    @property
    def index(self) -> PackageIndex:
        if self._index is None:
            self._index = RepoManager(self.db).index()
        return self._index

    def close(self):
        self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ==================== Requests ====================
@dataclass(frozen=True)
class Install:
    spec: str


@dataclass(frozen=True)
class Remove:
    spec: str


@dataclass(frozen=True)
class Upgrade:
    regexp: str = ""


@dataclass(frozen=True)
class DoNotUpgrade:
    regexp: str


@dataclass(frozen=True)
class ManifestFile:
    path: str


@dataclass(frozen=True)
class RollBack:
    pass


@dataclass(frozen=True)
class SwitchGeneration:
    pattern: str


@dataclass(frozen=True)
class DeleteGenerations:
    pattern: str = ""


ADMIN_ACTIONS = (RollBack, SwitchGeneration, DeleteGenerations)
MANIFEST_ACTIONS = (Install, Remove, Upgrade, DoNotUpgrade, ManifestFile)


@dataclass
class Request:
    actions: List[Any]
    profile: str = DEFAULT_PROFILE
    dry_run: bool = False
    allow_collisions: bool = False
    bootstrap: bool = False
    with_source: List[str] = field(default_factory=list)


def roll_back(session, profile: Profile, dry_run=False):
    current = profile.current_number()
    if current == 0:
        raise GenerationNotFound("cannot roll back: already at the empty profile (generation 0)")
    previous = profile.previous_number()
    if dry_run:
        logger(f"would roll back from generation {current} to {previous}")
        return
    if previous == 0 and profile.generation_link(0) is None:
        drv = session.builder.submit(Manifest(), hooks=(), locale=False)
        profile.publish(0, session.builder.realize(drv))
        logger(f"switched from generation {current} to 0")
    else:
        profile.switch_to_generation(previous)


def switch_generation_number(profile: Profile, pattern: str) -> int:
    pattern = pattern.strip()
    if re.fullmatch(r"\d+", pattern):
        return int(pattern)
    if re.fullmatch(r"[+-]\d+", pattern):
        number = profile.relative_number(int(pattern))
        if number is None:
            raise GenerationNotFound(f"cannot switch to generation '{pattern}'")
        return number
    raise UnsupportedPatternSyntax(f"invalid generation '{pattern}'")


def run_admin_action(session, profile: Profile, action, dry_run=False):
    if isinstance(action, RollBack):
        roll_back(session, profile, dry_run)
    elif isinstance(action, SwitchGeneration):
        profile.require()
        number = switch_generation_number(profile, action.pattern)
        if dry_run:
            logger(f"would switch to generation {number}")
        else:
            profile.switch_to_generation(number)
    elif isinstance(action, DeleteGenerations):
        profile.require()
        numbers = profile.select(action.pattern, for_deletion=True)
        if numbers is None:
            raise NoMatchingGeneration(f"no generation matches '{action.pattern}'")
        if dry_run:
            logger(f"would delete generations {numbers}")
        else:
            profile.delete(numbers, session.db)
    else:
        raise TypeError(f"not an administrative action: {action!r}")


def resolve_install(session, spec: str, transform=identity) -> ManifestEntry:
    """Turn an install specification into a manifest entry."""
    if spec.startswith("/"):
        row = session.db.get_store_item(os.path.normpath(spec))
        if row is None:
            raise NonInstallableTarget(f"'{spec}' is neither a package nor a known store item")
        path, name, ver, output = row
        return ManifestEntry(name=name, version=ver, output=output, item=path)

    name, ver, output = parse_package_spec(spec)
    package = session.index.lookup_best(name, ver)
    if package is None:
        raise PackageNotFound(f"{spec}: package not found")
    package = transform(package)
    replacement = resolve_superseding(session.index, package)
    if replacement is not package:
        logger(f"package '{package.name}' has been superseded by '{replacement.name}'")
        package = transform(replacement)
    output = output or package.default_output()
    if output not in package.outputs:
        raise PackageNotFound(f"package '{package.name}' lacks output '{output}'")
    return ManifestEntry.from_package(package, output)


def load_manifest_files(session, paths: List[str], transform=identity) -> Manifest:
    """Manifest made of the packages listed in YAML manifest files."""
    transaction = ManifestTransaction()
    for path in paths:
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PygenError(f"could not read manifest file {path}: {e}")
        if not isinstance(data, dict) or not isinstance(data.get("packages", []), list):
            raise PygenError(f"{path}: expected a mapping with a 'packages' list")
        entries = [resolve_install(session, spec, transform) for spec in data.get("packages", [])]
        transaction = transaction.union(ManifestTransaction(install=entries))
    return manifest_perform_transaction(Manifest(), transaction)


def build_transaction(session, base: Manifest, actions, transform=identity) -> ManifestTransaction:
    """Removals, then upgrades, then installs, as one transaction on `base`."""
    removals, upgrades, keep, installs = [], [], [], []
    for action in actions:
        if isinstance(action, Remove):
            removals.append(action.spec)
        elif isinstance(action, Upgrade):
            upgrades.append(action.regexp)
        elif isinstance(action, DoNotUpgrade):
            keep.append(action.regexp)
        elif isinstance(action, Install):
            installs.append(action.spec)
        elif isinstance(action, (ManifestFile,) + ADMIN_ACTIONS):
            continue
        else:
            raise TypeError(f"unknown action: {action!r}")

    transaction = ManifestTransaction()
    for spec in removals:
        name, ver, output = parse_package_spec(spec)
        pattern = ManifestPattern(name, ver, output)
        if not base.matching(pattern):
            raise PackageNotFound(f"package '{spec}' not found in profile")
        transaction = transaction.union(ManifestTransaction(remove=[pattern]))

    if upgrades:
        predicate = upgrade_predicate(upgrades, keep)
        for entry in base:
            delta = resolve_upgrade(entry, predicate, session.index, transform, transaction)
            transaction = transaction.union(delta)

    for spec in installs:
        entry = resolve_install(session, spec, transform)
        pending = any(e.key == entry.key for e in transaction.install)
        if base.lookup(*entry.key) == entry and not transaction.removes(entry) and not pending:
            logger(f"{entry.spec()} is already installed")
            continue
        transaction = transaction.union(ManifestTransaction(install=[entry]))
    return transaction


def process_request(session, request: Request) -> Optional[BuildResult]:
    """Run the administrative actions of `request`, then its manifest changes."""
    profile = Profile(request.profile)
    transform = options_to_transformation(request.with_source)
    result = None
    with profile_lock(profile.path):
        for action in request.actions:
            if isinstance(action, ADMIN_ACTIONS):
                run_admin_action(session, profile, action, request.dry_run)

        if not any(isinstance(a, MANIFEST_ACTIONS) for a in request.actions):
            return result
        manifest_files = [a.path for a in request.actions if isinstance(a, ManifestFile)]
        current = profile.manifest()
        base = load_manifest_files(session, manifest_files, transform) if manifest_files else current
        transaction = build_transaction(session, base, request.actions, transform)
        if transaction.is_empty() and not manifest_files:
            logger("nothing to be done")
            return BuildResult(NOTHING_TO_DO, profile.current_number(), profile.current_target())
        new_manifest = manifest_perform_transaction(base, transaction)
        describe_changes(current, new_manifest)
        result = build_and_publish(
            session,
            profile,
            new_manifest,
            dry_run=request.dry_run,
            allow_collisions=request.allow_collisions,
            bootstrap=request.bootstrap,
        )
    return result


# ==================== Queries ====================
def _compile_regexp(regexp):
    try:
        return re.compile(regexp)
    except re.error as e:
        raise PygenError(f"invalid regular expression '{regexp}': {e}")


def list_installed(profile: Profile, regexp=None) -> List[ManifestEntry]:
    pattern = _compile_regexp(regexp) if regexp else None
    return [e for e in profile.manifest() if pattern is None or pattern.search(e.name)]


def list_generations(profile: Profile, pattern=None) -> List[Tuple[int, int, Manifest]]:
    numbers = profile.select(pattern)
    if numbers is None:
        raise NoMatchingGeneration(f"no generation matches '{pattern}'")
    return [(n, profile.generation_time(n), profile.generation_manifest(n)) for n in numbers]


def list_available(index: PackageIndex, regexp=None) -> List[Package]:
    pattern = _compile_regexp(regexp) if regexp else None
    return [p for p in index.all_packages() if pattern is None or pattern.search(p.name)]


def search(index: PackageIndex, regexps: List[str]) -> List[Tuple[Package, int]]:
    try:
        return index.search(regexps)
    except re.error as e:
        raise PygenError(f"invalid regular expression: {e}")


def export_manifest(profile: Profile) -> str:
    return yaml.safe_dump({"packages": [e.spec() for e in profile.manifest()]}, sort_keys=False)


# ==================== CLI ====================
def _add_build_options(parser):
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Show what would be done without doing it"
    )
    parser.add_argument(
        "--allow-collisions", action="store_true", help="Do not fail on file collisions in the profile"
    )
    parser.add_argument(
        "--bootstrap", action="store_true", help="Build the profile without post-processing hooks"
    )
    parser.add_argument(
        "--with-source",
        action="append",
        default=[],
        metavar="PACKAGE=URI",
        help="Use URI as the source of PACKAGE",
    )


def request_from_args(args) -> Request:
    command = args.command
    if command == "install":
        actions = [Install(s) for s in args.packages]
    elif command == "remove":
        actions = [Remove(s) for s in args.packages]
    elif command == "upgrade":
        actions = [Upgrade(r) for r in (args.regexps or [""])]
        actions += [DoNotUpgrade(r) for r in args.do_not_upgrade]
    elif command == "roll-back":
        actions = [RollBack()]
    elif command == "switch-generation":
        actions = [SwitchGeneration(args.pattern)]
    elif command == "delete-generations":
        actions = [DeleteGenerations(args.pattern or "")]
    elif command == "package":
        actions = []
        if args.roll_back:
            actions.append(RollBack())
        if args.switch_generation:
            actions.append(SwitchGeneration(args.switch_generation))
        if args.delete_generations is not None:
            actions.append(DeleteGenerations(args.delete_generations))
        actions += [ManifestFile(p) for p in args.manifest]
        actions += [Remove(s) for s in args.remove]
        actions += [Upgrade(r) for r in args.upgrade]
        actions += [DoNotUpgrade(r) for r in args.do_not_upgrade]
        actions += [Install(s) for s in args.install]
    else:
        raise ValueError(f"not a transaction command: {command}")
    return Request(
        actions,
        profile=args.profile,
        dry_run=args.dry_run,
        allow_collisions=args.allow_collisions,
        bootstrap=args.bootstrap,
        with_source=args.with_source,
    )


TRANSACTION_COMMANDS = (
    "install",
    "remove",
    "upgrade",
    "package",
    "roll-back",
    "switch-generation",
    "delete-generations",
)


def _dispatch(session, args):
    if args.command == "repo-add":
        RepoManager(session.db).add_repo(args.name, args.url)
        print(f"Repository {args.name} added.")
    elif args.command == "repo-list":
        for name, url in session.db.list_repos():
            print(f"{name}: {url}")
    elif args.command in TRANSACTION_COMMANDS:
        process_request(session, request_from_args(args))
    elif args.command == "list-installed":
        entries = list_installed(Profile(args.profile), args.regexp)
        if not entries:
            print("No packages installed.")
        for e in entries:
            print(f"{e.name}\t{e.version}\t{e.output}\t{e.item}")
    elif args.command == "list-generations":
        profile = Profile(args.profile)
        current = profile.current_number()
        for number, created, manifest in list_generations(profile, args.pattern):
            stamp = datetime.fromtimestamp(created).strftime("%b %d %Y %H:%M:%S")
            marker = "\t(current)" if number == current else ""
            print(f"Generation {number}\t{stamp}{marker}")
            for e in manifest:
                print(f"  {e.name}\t{e.version}\t{e.output}\t{e.item}")
    elif args.command == "list-available":
        for p in list_available(session.index, args.regexp):
            print(f"{p.name}\t{p.version}\t{','.join(p.outputs)}\t{p.synopsis}")
    elif args.command == "search":
        for p, score in search(session.index, args.regexps):
            print(f"name: {p.name}\nversion: {p.version}\nrelevance: {score}\nsynopsis: {p.synopsis}\n")
    elif args.command == "export-manifest":
        print(export_manifest(Profile(args.profile)), end="")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="pygen", description="pygen - transactional package profiles with generations"
    )
    parser.add_argument("-p", "--profile", default=DEFAULT_PROFILE, help="Profile to operate on")
    parser.add_argument("--cache", help="Binary cache URL (env: PYGEN_CACHE_URL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    repo_add = subparsers.add_parser("repo-add", help="Add a recipe repository")
    repo_add.add_argument("name")
    repo_add.add_argument("url")

    subparsers.add_parser("repo-list", help="List added repositories")

    install = subparsers.add_parser("install", help="Install packages")
    install.add_argument("packages", nargs="+")
    _add_build_options(install)

    remove = subparsers.add_parser("remove", help="Remove packages")
    remove.add_argument("packages", nargs="+")
    _add_build_options(remove)

    upgrade = subparsers.add_parser("upgrade", help="Upgrade packages matching REGEXPs")
    upgrade.add_argument("regexps", nargs="*")
    upgrade.add_argument("--do-not-upgrade", action="append", default=[], metavar="REGEXP")
    _add_build_options(upgrade)

    package = subparsers.add_parser("package", help="Combine several actions in one transaction")
    package.add_argument("-i", "--install", action="append", default=[], metavar="PACKAGE")
    package.add_argument("-r", "--remove", action="append", default=[], metavar="PACKAGE")
    package.add_argument(
        "-u", "--upgrade", action="append", nargs="?", const="", default=[], metavar="REGEXP"
    )
    package.add_argument("--do-not-upgrade", action="append", default=[], metavar="REGEXP")
    package.add_argument("-m", "--manifest", action="append", default=[], metavar="FILE")
    package.add_argument("--roll-back", action="store_true")
    package.add_argument("-S", "--switch-generation", metavar="PATTERN")
    package.add_argument(
        "-d", "--delete-generations", nargs="?", const="", default=None, metavar="PATTERN"
    )
    _add_build_options(package)

    roll_back_cmd = subparsers.add_parser("roll-back", help="Roll back to the previous generation")
    _add_build_options(roll_back_cmd)

    switch = subparsers.add_parser("switch-generation", help="Switch to a generation")
    switch.add_argument("pattern", help="Generation number, or +N/-N relative to the current one")
    _add_build_options(switch)

    delete = subparsers.add_parser("delete-generations", help="Delete generations")
    delete.add_argument("pattern", nargs="?", default="")
    _add_build_options(delete)

    list_installed_cmd = subparsers.add_parser("list-installed", help="List installed packages")
    list_installed_cmd.add_argument("regexp", nargs="?")

    list_generations_cmd = subparsers.add_parser("list-generations", help="List generations")
    list_generations_cmd.add_argument("pattern", nargs="?", default="")

    list_available_cmd = subparsers.add_parser("list-available", help="List available packages")
    list_available_cmd.add_argument("regexp", nargs="?")

    search_cmd = subparsers.add_parser("search", help="Search available packages")
    search_cmd.add_argument("regexps", nargs="+")

    subparsers.add_parser("export-manifest", help="Print a manifest file for the profile")

    args = parser.parse_args(argv)
    cache_url = args.cache or os.environ.get("PYGEN_CACHE_URL")

    with Session(cache_url=cache_url) as session:
        try:
            return _dispatch(session, args)
        except PygenError as e:
            logger(str(e), "ERROR")
            return 1


if __name__ == "__main__":
    sys.exit(main())
