# Project setup configuration for jailkeeper

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="jailkeeper",
    version="0.4.0",
    author="jailkeeper maintainers",
    description="Idempotent fail2ban installer and activation orchestrator",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: Security",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires=">=3.11",
    install_requires=[
        "psutil>=5.9.7",
        "structlog>=24.1.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "jailkeeper=jailkeeper.__main__:main",
        ],
    },
)
