"""
Colour assignments for branchflow.

Provides:
- Tree palettes: user nodes take the palette of their tree, picked by the
  tree index (not the wrapped letter), cycling through five palettes
- The responder palette: assistant nodes are always gray
- Collaborator colours: one stable colour per participant id
"""

from __future__ import annotations
from dataclasses import dataclass

from .models import ChatNode


@dataclass(frozen=True)
class TreePalette:
    """Colour palette for one tree."""

    name: str

    # Node body
    background: str
    border: str
    accent: str

    # Label text and connection handle
    text: str
    handle: str


TREE_PALETTES: tuple[TreePalette, ...] = (
    TreePalette(name="blue", background="#eff6ff", border="#bfdbfe", accent="#dbeafe", text="#2563eb", handle="#60a5fa"),
    TreePalette(name="emerald", background="#ecfdf5", border="#a7f3d0", accent="#d1fae5", text="#059669", handle="#34d399"),
    TreePalette(name="amber", background="#fffbeb", border="#fde68a", accent="#fef3c7", text="#d97706", handle="#fbbf24"),
    TreePalette(name="purple", background="#faf5ff", border="#e9d5ff", accent="#f3e8ff", text="#9333ea", handle="#a855f7"),
    TreePalette(name="rose", background="#fff1f2", border="#fecdd3", accent="#ffe4e6", text="#e11d48", handle="#fb7185"),
)

ASSISTANT_PALETTE = TreePalette(
    name="gray", background="#f9fafb", border="#e5e7eb", accent="#f3f4f6", text="#4b5563", handle="#9ca3af",
)


def get_palette(node: ChatNode, tree_index: int) -> TreePalette:
    """Palette for a node: gray for replies, the tree's colour for user turns."""
    if node.is_assistant:
        return ASSISTANT_PALETTE
    return TREE_PALETTES[tree_index % len(TREE_PALETTES)]


COLLABORATOR_COLORS: tuple[str, ...] = (
    "#ef4444",  # red
    "#f97316",  # orange
    "#eab308",  # yellow
    "#22c55e",  # green
    "#14b8a6",  # teal
    "#3b82f6",  # blue
    "#8b5cf6",  # violet
    "#ec4899",  # pink
)


def collaborator_color(user_id: str) -> str:
    """Stable colour for a participant, from a 32-bit string hash of its id."""
    h = 0
    for ch in user_id:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return COLLABORATOR_COLORS[abs(h) % len(COLLABORATOR_COLORS)]
