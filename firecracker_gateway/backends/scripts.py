"""
Shell script generation for code running inside a Firecracker microVM.

The generated script recreates the submitted files under /tmp/workspace and
then runs them with the toolchain for the requested language. Output is
written to the VM console, which the backend later reads from the VM log.
"""

import shlex
from typing import Callable, Dict, List

from .base import UnsupportedLanguageError

WORKSPACE_DIR = "/tmp/workspace"

# Marker printed right before user code runs; result parsing keys off it
EXECUTION_MARKER = "Executing"


def find_main_file(files: Dict[str, str], candidates: List[str]) -> str:
    """Pick the entry point among the submitted files.

    Exact candidate names win, then the first file matching an extension
    candidate (entries starting with "."), then the first file submitted.
    """
    names = list(files.keys())

    for candidate in candidates:
        if candidate in names:
            return candidate

    for candidate in candidates:
        if candidate.startswith("."):
            for name in names:
                if name.endswith(candidate):
                    return name

    return names[0] if names else ""


def _heredoc_delimiter(content: str) -> str:
    lines = set(content.splitlines())
    delimiter = "EOF"
    n = 0
    while delimiter in lines:
        n += 1
        delimiter = f"EOF_{n}"
    return delimiter


def _write_files(files: Dict[str, str]) -> str:
    parts = []
    for name, content in files.items():
        delimiter = _heredoc_delimiter(content)
        parts.append(
            f"cat > {shlex.quote(name)} << '{delimiter}'\n{content}\n{delimiter}\n"
        )
    return "\n".join(parts)


def _javascript(files: Dict[str, str], timeout: int) -> str:
    main = shlex.quote(find_main_file(files, [".js", "main.js", "index.js"]))
    return f"""
echo "{EXECUTION_MARKER} JavaScript..."
timeout {timeout}s node {main} 2>&1
"""


def _python(files: Dict[str, str], timeout: int) -> str:
    main = shlex.quote(find_main_file(files, [".py", "main.py", "app.py"]))
    return f"""
echo "{EXECUTION_MARKER} Python..."
timeout {timeout}s python3 {main} 2>&1
"""


def _typescript(files: Dict[str, str], timeout: int) -> str:
    main = shlex.quote(find_main_file(files, [".ts", "main.ts", "index.ts"]))
    return f"""
echo "{EXECUTION_MARKER} TypeScript..."
timeout {timeout}s npx ts-node {main} 2>&1
"""


def _bash(files: Dict[str, str], timeout: int) -> str:
    main = shlex.quote(find_main_file(files, [".sh", "main.sh", "script.sh"]))
    return f"""
echo "{EXECUTION_MARKER} Bash..."
chmod +x {main}
timeout {timeout}s bash {main} 2>&1
"""


def _compiled(compiler: str, label: str, main: str, timeout: int) -> str:
    # set -e would abort before the failure message, so test the compiler directly
    return f"""
echo "{EXECUTION_MARKER} {label} (compile and run)..."
if {compiler} -o program {shlex.quote(main)} 2>&1; then
    timeout {timeout}s ./program 2>&1
else
    echo "Compilation failed"
    exit 1
fi
"""


def _c(files: Dict[str, str], timeout: int) -> str:
    return _compiled("gcc", "C", find_main_file(files, [".c", "main.c"]), timeout)


def _cpp(files: Dict[str, str], timeout: int) -> str:
    main = find_main_file(files, [".cpp", ".cc", "main.cpp"])
    return _compiled("g++", "C++", main, timeout)


def _nodejs(files: Dict[str, str], timeout: int) -> str:
    main = shlex.quote(
        find_main_file(files, ["server.js", "app.js", "index.js", "main.js"])
    )
    return f"""
echo "Setting up Node.js environment..."
if [ -f "package.json" ]; then
    echo "Installing dependencies..."
    timeout 60s npm install 2>&1 || echo "Failed to install dependencies, continuing..."
fi

echo "{EXECUTION_MARKER} Node.js application..."
timeout {timeout}s node {main} 2>&1
"""


def _react(files: Dict[str, str], timeout: int) -> str:
    return f"""
echo "Setting up React environment..."
if [ -f "package.json" ]; then
    echo "Installing dependencies..."
    timeout 120s npm install 2>&1 || echo "Failed to install dependencies, continuing..."
fi

if [ -f "vite.config.js" ] || [ -f "vite.config.ts" ]; then
    echo "{EXECUTION_MARKER} Vite development server..."
    timeout {timeout}s npm run dev -- --host 0.0.0.0 --port 3000 2>&1 &
    sleep 5
    echo "React app should be running on http://localhost:3000"
elif [ -f "package.json" ] && grep -q "react-scripts" package.json; then
    echo "{EXECUTION_MARKER} Create React App development server..."
    timeout {timeout}s npm start 2>&1 &
    sleep 5
    echo "React app should be running on http://localhost:3000"
else
    echo "No React build configuration found. Treating as Node.js..."
{_nodejs(files, timeout)}
fi
"""


LANGUAGE_RUNNERS: Dict[str, Callable[[Dict[str, str], int], str]] = {
    "javascript": _javascript,
    "js": _javascript,
    "python": _python,
    "py": _python,
    "typescript": _typescript,
    "ts": _typescript,
    "bash": _bash,
    "shell": _bash,
    "c": _c,
    "cpp": _cpp,
    "c++": _cpp,
    "nodejs": _nodejs,
    "node": _nodejs,
    "react": _react,
    "tsx": _react,
}


def supported_languages() -> List[str]:
    return sorted(LANGUAGE_RUNNERS.keys())


def build_execution_script(
    files: Dict[str, str], language: str, timeout_seconds: int = 30
) -> str:
    """Render the bash script that materializes and runs the files.

    Raises:
        UnsupportedLanguageError: language has no runner
    """
    runner = LANGUAGE_RUNNERS.get((language or "").lower())
    if runner is None:
        raise UnsupportedLanguageError(f"Unsupported language: {language}")

    script = "#!/bin/bash\n"
    script += "set -e\n"
    script += f"cd {WORKSPACE_DIR}\n\n"
    script += _write_files(files)
    script += runner(files, max(1, int(timeout_seconds)))
    return script
