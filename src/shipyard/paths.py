"""Unified path constants for shipyard.

All local state lives under the .shipyard directory:
- .shipyard/workspace/   # staged repository clones
- .shipyard/locks/       # per-target run locks
"""

from pathlib import Path

# 基础目录（在当前工作目录下）
BASE_DIR = Path(".shipyard")

WORKSPACE_DIR = BASE_DIR / "workspace"    # 本地仓库暂存
LOCKS_DIR = BASE_DIR / "locks"            # 每个目标主机一个锁文件
