from setuptools import setup, find_packages

setup(
    name="examprep",
    version="0.1.0",
    packages=find_packages(include=["examprep", "examprep.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0.1",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
            "aiosqlite>=0.19",
        ],
    },
)
