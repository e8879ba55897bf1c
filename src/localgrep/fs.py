import os

from .models import SourceFile

CODE_EXTENSIONS = frozenset(
    {
        ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
        ".py", ".pyw",
        ".rs",
        ".go",
        ".java", ".kt", ".kts",
        ".c", ".h", ".cpp", ".hpp", ".cc", ".cxx",
        ".cs",
        ".rb",
        ".php",
        ".swift",
        ".scala",
        ".clj", ".cljs", ".cljc",
        ".ex", ".exs",
        ".hs",
        ".ml", ".mli",
        ".lua",
        ".r",
        ".jl",
        ".sh", ".bash", ".zsh",
        ".sql",
        ".graphql", ".gql",
        ".vue", ".svelte",
        ".md", ".mdx",
        ".json", ".yaml", ".yml", ".toml",
        ".css", ".scss", ".sass", ".less",
        ".html", ".htm",
    }
)

SKIP_DIRS = frozenset(
    {
        "node_modules", ".git", ".hg", ".svn",
        "dist", "build", "out", ".next", ".nuxt", ".output",
        "__pycache__", ".pytest_cache", "venv", ".venv", "env", ".env",
        "target", "vendor", ".cache", "coverage", ".nyc_output",
    }
)

MAX_FILE_BYTES = 1024 * 1024


def is_source_file(file_path: str) -> bool:
    _, ext = os.path.splitext(file_path)
    return ext.lower() in CODE_EXTENSIONS


def iter_source_files(root: str):
    """Yield absolute paths of indexable files under *root*, in sorted order."""
    if not os.path.exists(root) or not os.path.isdir(root):
        raise ValueError(f"No such directory: {root}")
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")
        )
        for filename in sorted(filenames):
            full_path = os.path.join(dirpath, filename)
            if not is_source_file(full_path):
                continue
            if os.path.getsize(full_path) > MAX_FILE_BYTES:
                continue
            yield full_path


def read_source_file(file_path: str) -> str:
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def collect_source_files(root: str) -> list[SourceFile]:
    """Read every indexable file under *root* keyed by its path relative to root."""
    root = os.path.abspath(root)
    files: list[SourceFile] = []
    for full_path in iter_source_files(root):
        files.append(
            SourceFile(
                file_path=os.path.relpath(full_path, root),
                content=read_source_file(full_path),
            )
        )
    return files
