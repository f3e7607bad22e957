from setuptools import setup, find_namespace_packages

setup(
    name="bucketgate",
    version="0.1.0",
    packages=find_namespace_packages(include=["bucketgate", "bucketgate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.37",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.26",
            "fakeredis[lua]>=2.20",
        ],
    },
)
