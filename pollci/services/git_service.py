from typing import List, Sequence, Tuple


class GitService:
    """
    Builds git command lines as argument vectors. Nothing here runs a
    process; callers hand the commands to ProcessService.
    """

    @staticmethod
    def revision() -> List[str]:
        """Prints the checked-out revision. Callers must strip the output."""
        return ["git", "rev-parse", "--verify", "HEAD"]

    @staticmethod
    def checkout(url: str, destination_path: str, branch: str) -> List[str]:
        """Shallow clone of a single branch into a directory that must not exist yet."""
        if not url:
            raise ValueError("Repository url must not be empty")
        return ["git", "clone", "--depth", "1", url, destination_path, "--branch", branch]

    @staticmethod
    def update(branch: str) -> List[List[str]]:
        """Discards local changes and moves the working copy to origin/<branch>."""
        return [
            ["git", "fetch"],
            ["git", "reset", "--hard", f"origin/{branch}"],
            ["git", "submodule", "update", "--init", "--recursive"],
        ]

    @staticmethod
    def change_list(old_revision: str, new_revision: str) -> List[str]:
        # Without a previous build the whole history up to new_revision is the change list
        revision_range = f"{old_revision}..{new_revision}" if old_revision else new_revision
        return ["git", "log", "--reverse", "--name-status", "--pretty=format:", revision_range]

    @staticmethod
    def parse_change_list(output: str) -> List[Tuple[str, str]]:
        changes = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            # Renames and copies report old and new path, keep the new one
            changes.append((parts[0], parts[-1]))
        return changes

    @staticmethod
    def version(file_path: str) -> List[str]:
        return ["git", "checkout", "--", file_path]

    @staticmethod
    def authors(revisions: Sequence[str]) -> List[str]:
        if len(revisions) < 2:
            raise ValueError("At least two revisions are needed to list authors")
        return ["git", "show", "-s", "--pretty=format:%an", "..".join(revisions)]

    @staticmethod
    def parse_authors(output: str) -> str:
        seen = []
        for line in output.splitlines():
            name = line.strip()
            if name and name not in seen:
                seen.append(name)
        return " ".join(seen)
