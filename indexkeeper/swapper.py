# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Dataset Swapper

Replaces the live dataset directory with a freshly extracted one.

Swap flow:
  1. Locate exactly one non-empty node directory in the candidate tree
  2. Stop the server (it must not hold the live directory open)
  3. Rename the live directory to a timestamped backup
  4. Rename the candidate node directory into the live path
  5. Re-validate the live directory
  6. Delete candidate and backup, or rename the backup back on failure

Every step is a rename on the same filesystem, so the live path is always
either the old dataset or the new one. The only exception is a failed
restore, which is raised as CriticalRestoreError.
"""

import asyncio
import fnmatch
import logging
import os
import shutil
import time
from pathlib import Path
from typing import List, Optional

from .errors import (
    CriticalRestoreError,
    InvalidCandidateStructureError,
    ShutdownTimeoutError,
    SwapError,
)

logger = logging.getLogger(__name__)

NODE_PATTERN = "node_*"
BACKUP_MARKER = ".backup."


def is_valid_dataset(path: Path) -> bool:
    """A dataset is valid iff its directory exists and is non-empty."""
    path = Path(path)
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return False


def backup_path_for(live_dir: Path) -> Path:
    """Timestamped backup path next to the live directory."""
    live_dir = Path(live_dir)
    return live_dir.with_name(f"{live_dir.name}{BACKUP_MARKER}{int(time.time())}")


def list_backups(live_dir: Path) -> List[Path]:
    """Backups of the live directory, oldest first."""
    live_dir = Path(live_dir)
    if not live_dir.parent.is_dir():
        return []

    def _stamp(path: Path) -> int:
        try:
            return int(path.name.rsplit(".", 1)[-1])
        except ValueError:
            return 0

    backups = [p for p in live_dir.parent.glob(f"{live_dir.name}{BACKUP_MARKER}*") if p.is_dir()]
    return sorted(backups, key=_stamp)


class DatasetSwapper:
    """
    Hot-swaps dataset directories with backup and rollback.

    The swapper holds the live directory exclusively for the duration of a
    swap; it stops the server through the supervisor before any rename and
    leaves restarting it to the caller.
    """

    def __init__(self, supervisor, node_pattern: str = NODE_PATTERN, search_depth: int = 3):
        """
        Args:
            supervisor: Object with an async ``stop()``; normally a ProcessSupervisor.
            node_pattern: Glob pattern of node directory names.
            search_depth: How many levels below the candidate root to search.
        """
        self.supervisor = supervisor
        self.node_pattern = node_pattern
        self.search_depth = search_depth

    # =========================================================================
    # CANDIDATE DISCOVERY
    # =========================================================================

    def _is_node_name(self, name: str) -> bool:
        return fnmatch.fnmatch(name, self.node_pattern) and BACKUP_MARKER not in name

    def find_node_dirs(self, root: Path) -> List[Path]:
        """Breadth-first search for node directories, not descending into matches."""
        matches: List[Path] = []
        level = [Path(root)]
        for _ in range(self.search_depth):
            next_level = []
            for directory in level:
                try:
                    children = sorted(directory.iterdir())
                except OSError:
                    continue
                for child in children:
                    if not child.is_dir() or child.is_symlink():
                        continue
                    if self._is_node_name(child.name):
                        matches.append(child)
                    else:
                        next_level.append(child)
            level = next_level
        return matches

    def find_node_dir(self, root: Path) -> Path:
        """
        Locate the single node directory inside an extracted archive.

        Archives have shipped as ``node_1/`` and as ``photon_data/node_1/``,
        so the search tolerates nesting up to ``search_depth`` levels.

        Raises:
            InvalidCandidateStructureError: Zero matches, several matches, or
                                            an empty match.
        """
        matches = self.find_node_dirs(root)
        if not matches:
            raise InvalidCandidateStructureError(
                f"No {self.node_pattern} directory found within {self.search_depth} levels of {root}"
            )
        if len(matches) > 1:
            found = ", ".join(str(m) for m in matches)
            raise InvalidCandidateStructureError(f"Multiple node directories found in {root}: {found}")
        node_dir = matches[0]
        if not is_valid_dataset(node_dir):
            raise InvalidCandidateStructureError(f"Node directory {node_dir} is empty")
        return node_dir

    # =========================================================================
    # SWAP
    # =========================================================================

    async def swap(self, candidate_dir: Path, live_dir: Path) -> None:
        """
        Install the dataset found in ``candidate_dir`` as ``live_dir``.

        The candidate directory is removed afterwards whatever the outcome.

        Raises:
            InvalidCandidateStructureError: No usable node directory; the live
                                            directory was not touched or was restored.
            SwapError: Stopping the server or a rename failed; the previous
                       dataset is in place.
            CriticalRestoreError: The backup could not be moved back.
        """
        candidate_dir = Path(candidate_dir)
        live_dir = Path(live_dir)
        logger.info("Performing hot swap of search index from %s", candidate_dir)

        try:
            node_source = self.find_node_dir(candidate_dir)
        except InvalidCandidateStructureError:
            logger.error("Downloaded index structure is invalid in %s", candidate_dir)
            await self._remove_tree(candidate_dir)
            raise
        logger.info("Found valid node directory at: %s", node_source)

        try:
            await self.supervisor.stop()
        except ShutdownTimeoutError as e:
            await self._remove_tree(candidate_dir)
            raise SwapError(f"Server could not be stopped, live dataset left untouched: {e}") from e

        backup_dir: Optional[Path] = None
        if live_dir.exists():
            backup_dir = backup_path_for(live_dir)
            logger.info("Creating backup at %s", backup_dir)
            try:
                os.rename(live_dir, backup_dir)
            except OSError as e:
                await self._remove_tree(candidate_dir)
                raise SwapError(f"Failed to create backup of {live_dir}: {e}") from e

        logger.info("Moving new index into place from %s to %s", node_source, live_dir)
        try:
            os.rename(node_source, live_dir)
        except FileNotFoundError as e:
            failure: Exception = InvalidCandidateStructureError(
                f"Candidate {node_source} disappeared before it could be installed: {e}"
            )
        except OSError as e:
            failure = SwapError(f"Failed to move {node_source} into place: {e}")
        else:
            if is_valid_dataset(live_dir):
                logger.info("Hot swap completed successfully")
                await self._remove_tree(candidate_dir)
                if backup_dir is not None:
                    await self._remove_tree(backup_dir)
                return
            failure = SwapError(f"New directory {live_dir} is invalid after move")

        logger.error("%s, restoring backup", failure)
        try:
            self._restore(live_dir, backup_dir)
        finally:
            await self._remove_tree(candidate_dir)
        raise failure

    def _restore(self, live_dir: Path, backup_dir: Optional[Path]) -> None:
        if live_dir.exists():
            shutil.rmtree(live_dir, ignore_errors=True)
        if backup_dir is None:
            return
        try:
            os.rename(backup_dir, live_dir)
        except OSError as e:
            logger.critical(
                "CRITICAL: Failed to restore backup! Manual intervention required. (%s -> %s)",
                backup_dir, live_dir,
            )
            raise CriticalRestoreError(live_dir, backup_dir, e) from e
        logger.info("Restored previous dataset from %s", backup_dir)

    # =========================================================================
    # INITIAL INSTALL & RECOVERY
    # =========================================================================

    def install_initial(self, extracted_root: Path, live_dir: Path) -> Path:
        """
        Put a first-time download in place. No server runs, nothing to back up.

        Raises:
            InvalidCandidateStructureError: No valid node directory was extracted.
            SwapError: The node directory could not be renamed into place.
        """
        extracted_root = Path(extracted_root)
        live_dir = Path(live_dir)
        if is_valid_dataset(live_dir):
            return live_dir
        if live_dir.is_dir():
            live_dir.rmdir()  # empty leftover would otherwise match the search

        node_dir = self.find_node_dir(extracted_root)
        logger.info("Moving extracted index from %s to %s", node_dir, live_dir)
        try:
            os.rename(node_dir, live_dir)
        except OSError as e:
            raise SwapError(f"Failed to move {node_dir} into place: {e}") from e

        wrapper = node_dir.parent
        while wrapper != extracted_root and extracted_root in wrapper.parents:
            if any(wrapper.iterdir()):
                break
            wrapper.rmdir()
            wrapper = wrapper.parent
        return live_dir

    def recover_interrupted_swap(self, live_dir: Path) -> Optional[Path]:
        """
        Repair the live directory after a swap was interrupted by a crash.

        If the live directory is invalid and a backup exists, the newest
        backup is renamed back into place. Leftover backups are deleted.

        Returns:
            The backup that was restored, or None.

        Raises:
            CriticalRestoreError: The backup could not be renamed back.
        """
        live_dir = Path(live_dir)
        backups = list_backups(live_dir)
        if not backups:
            return None

        restored: Optional[Path] = None
        if not is_valid_dataset(live_dir):
            restored = backups.pop()
            logger.warning("Live dataset missing after interrupted swap, restoring %s", restored)
            self._restore(live_dir, restored)

        for stale in backups:
            logger.info("Removing stale backup %s", stale)
            shutil.rmtree(stale, ignore_errors=True)
        return restored

    @staticmethod
    async def _remove_tree(path: Path) -> None:
        if Path(path).exists():
            await asyncio.to_thread(shutil.rmtree, path, True)
