# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.15
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/core/phases.py

"""
Ordered transfer phases for one storage node.

Each phase is pure configuration: an ordered list of rsync filter rules (first
match wins) plus transfer flags. The order is what makes a snapshot
consistent. Refs always land before or together with the objects they point
to; objects are never transferred ahead of the refs that keep them alive.

Paths are relative to the node's repositories/ directory, which holds:

    <shard>/<name>.git                          user and org repositories
    <shard>/nw/??/??/??/<id>/<name>.git         fork networks
    <shard>/??/??/??/gist/<name>.git            gists
    __<name>__/                                 special asset directories
    info/                                       storage-level metadata
"""

from enum import IntEnum

REPOSITORY_GLOBS = (
    "/*/*.git",
    "/*/nw/??/??/??/*/*.git",
    "/*/??/??/??/gist/*.git",
)

# Special directories that are rebuilt on demand or no longer used
CACHE_ONLY_DIRS = ("/__nodeload_archives__/",)
DEPRECATED_DIRS = ("/__purgatory__/",)

_SPECIAL_DIRS = "/__*__/"
_INFO_DIR = "/info/"


def _parent_dirs(glob: str) -> list[str]:
    """Every ancestor directory rsync must be allowed to descend through."""
    parts = glob.strip("/").split("/")[:-1]
    return ["/" + "/".join(parts[:depth]) + "/" for depth in range(1, len(parts) + 1)]


def _descend() -> list[str]:
    rules: list[str] = []
    for glob in REPOSITORY_GLOBS:
        for parent in _parent_dirs(glob):
            rule = f"+ {parent}"
            if rule not in rules:
                rules.append(rule)
    return rules


def _outside_repositories() -> list[str]:
    return [f"- {_SPECIAL_DIRS}", f"- {_INFO_DIR}"]


def _auxiliary_rules() -> list[str]:
    rules = _outside_repositories() + _descend()
    for repo in REPOSITORY_GLOBS:
        rules += [
            f"+ {repo}",
            f"- {repo}/objects",
            f"- {repo}/refs",
            f"- {repo}/packed-refs",
            f"- {repo}/logs",
            f"+ {repo}/**",
        ]
    return rules + ["- *"]


def _packed_refs_rules() -> list[str]:
    rules = _outside_repositories() + _descend()
    for repo in REPOSITORY_GLOBS:
        rules += [f"+ {repo}", f"+ {repo}/packed-refs"]
    return rules + ["- *"]


def _loose_refs_rules() -> list[str]:
    rules = _outside_repositories() + _descend()
    for repo in REPOSITORY_GLOBS:
        rules += [
            f"+ {repo}",
            f"+ {repo}/refs/",
            f"+ {repo}/refs/**",
            f"+ {repo}/logs/",
            f"+ {repo}/logs/**",
        ]
    return rules + ["- *"]


def _objects_rules() -> list[str]:
    rules = _outside_repositories() + _descend()
    for repo in REPOSITORY_GLOBS:
        rules += [
            f"+ {repo}",
            f"+ {repo}/objects/",
            # half-written packs and loose objects from in-flight pushes
            f"- {repo}/objects/tmp_*",
            f"- {repo}/objects/**/tmp_*",
            f"+ {repo}/objects/**",
        ]
    return rules + ["- *"]


def _special_dirs_rules() -> list[str]:
    rules = [f"- {d}" for d in CACHE_ONLY_DIRS + DEPRECATED_DIRS]
    rules += [
        f"+ {_SPECIAL_DIRS}",
        f"+ {_SPECIAL_DIRS}**",
        f"+ {_INFO_DIR}",
        f"- {_INFO_DIR}lost+found/",
        f"+ {_INFO_DIR}*",
        "- *",
    ]
    return rules


class TransferPhase(IntEnum):
    AUXILIARY = 1
    PACKED_REFS = 2
    LOOSE_REFS_AND_LOGS = 3
    OBJECTS_AND_PACKS = 4
    SPECIAL_DIRS = 5

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def rules(self) -> tuple[str, ...]:
        return _RULES[self]

    @property
    def compress(self) -> bool:
        # Packs and loose objects are already zlib-compressed
        return self is not TransferPhase.OBJECTS_AND_PACKS

    @property
    def preserve_hard_links(self) -> bool:
        # Forks share object files via hard links on the node
        return self is TransferPhase.OBJECTS_AND_PACKS


_LABELS = {
    TransferPhase.AUXILIARY: "auxiliary files",
    TransferPhase.PACKED_REFS: "packed refs",
    TransferPhase.LOOSE_REFS_AND_LOGS: "refs and reflogs",
    TransferPhase.OBJECTS_AND_PACKS: "objects and packs",
    TransferPhase.SPECIAL_DIRS: "special data directories",
}

_RULES = {
    TransferPhase.AUXILIARY: tuple(_auxiliary_rules()),
    TransferPhase.PACKED_REFS: tuple(_packed_refs_rules()),
    TransferPhase.LOOSE_REFS_AND_LOGS: tuple(_loose_refs_rules()),
    TransferPhase.OBJECTS_AND_PACKS: tuple(_objects_rules()),
    TransferPhase.SPECIAL_DIRS: tuple(_special_dirs_rules()),
}

PHASE_ORDER: tuple[TransferPhase, ...] = tuple(sorted(TransferPhase))
