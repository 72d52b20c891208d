"""Directory listing entry model."""

from __future__ import annotations

import stat

from pydantic import BaseModel, Field

# Git tree entry modes
MODE_TREE = 0o040000
MODE_FILE = 0o100644
MODE_EXECUTABLE = 0o100755
MODE_SYMLINK = 0o120000
MODE_SUBMODULE = 0o160000


class FileStat(BaseModel):
    """One immediate child of a directory in a branch's tree."""

    name: str = Field(..., alias="Name")
    mode: int = Field(..., alias="Mode", description="Git file mode of the entry")
    hash: str = Field(..., alias="Hash", description="Hex object id")

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)

    @property
    def is_symlink(self) -> bool:
        return stat.S_ISLNK(self.mode)

    @property
    def is_file(self) -> bool:
        return stat.S_ISREG(self.mode)
