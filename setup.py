"""
pgrename - safe, auditable PostgreSQL table renames
"""

from setuptools import setup, find_packages

setup(
    name="pgrename",
    use_scm_version={"fallback_version": "0.1.0"},
    setup_requires=["setuptools_scm"],
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10",
    description="Transactional PostgreSQL table rename migrations with backup, audit and rollback",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
    ],
    install_requires=[
        "click>=8.0.0",
        "PyYAML>=6.0",
        "psycopg[binary]>=3.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "types-PyYAML>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pgrename=pgrename.cli:main",
        ],
    },
)
