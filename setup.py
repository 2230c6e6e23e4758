from pathlib import Path  # isort: skip

from setuptools import find_packages, setup  # isort: skip


HERE = Path(__file__).resolve().parent


def get_long_description():
    readme = HERE / "README.md"
    if not readme.exists():
        return ""
    return readme.read_text(encoding="utf-8")


setup(
    name="threadscope",
    version="0.1.0",
    description="In-process profiler for CPython: wall-clock stack sampling and retained memory attribution",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "benchmarks*", "scripts*"]),
    zip_safe=False,
    python_requires=">=3.8",
    install_requires=[
        "attrs>=22.2.0",
        "envier~=0.5",
        "intervaltree",
        "psutil>=5.0",
        "typing_extensions",
        "wrapt>=1.14",
    ],
    extras_require={
        # greenlet switches are reported as fiber markers when greenlet is installed
        "greenlet": ["greenlet>=1.0"],
        "testing": [
            "greenlet>=1.0",
            "hypothesis",
            "pytest",
        ],
    },
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Software Development :: Debuggers",
    ],
)
