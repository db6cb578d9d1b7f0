from setuptools import setup, find_packages


setup(
    name="comicvault",
    version="0.1",
    packages=find_packages(include=["comicvault", "comicvault.*"]),
    description="Streaming comic archive reader with a bounded page cache and an encrypted vault.",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
        "rarfile>=4.1",
        "py7zr>=1.0.0",
        "PyMuPDF>=1.24.3",
    ],
    entry_points={
        "console_scripts": [
            "comicvault=comicvault.cli:main",
        ]
    },
)
