"""
Setup script for the ads platform auth service.
"""
from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "OAuth token lifecycle manager for Google Ads, Facebook, Instagram and Meta"

# Read requirements
def read_requirements(filename):
    try:
        with open(os.path.join(this_directory, filename), 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    except FileNotFoundError:
        return []

# Build extras_require dict
extras_require = {}
if os.path.exists(os.path.join(this_directory, "requirements-dev.txt")):
    extras_require["dev"] = read_requirements("requirements-dev.txt")

setup(
    name="ads-platform-auth",
    version="1.0.0",
    description="Multi-platform OAuth token lifecycle manager for advertising APIs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Ads Platform Auth Team",
    author_email="contact@example.com",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.10",
    install_requires=read_requirements("requirements.txt"),
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "ads-auth-server=ads_auth.auth.run_web_server:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
