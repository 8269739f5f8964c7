"""Setup script for artifact-reloader.

Installs the ``artifact_reloader`` package and the ``artifact-reloader``
orchestrator command. Test dependencies are available through the ``test``
extra (``pip install -e .[test]``).
"""

from setuptools import setup, find_packages
import os

def get_version():
    """Read version from __init__.py."""
    init_py = os.path.join(os.path.dirname(__file__), "artifact_reloader", "__init__.py")
    if os.path.exists(init_py):
        with open(init_py, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("__version__"):
                    delim = '"' if '"' in line else "'"
                    return line.split(delim)[1]
    return "0.1.0"

setup(
    name="artifact-reloader",
    version=get_version(),
    description="Hash-gated, debounced artifact watcher that reloads state or restarts the server consuming it",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "watchdog>=4.0",
        "tomli>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "artifact-reloader=artifact_reloader.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
)
