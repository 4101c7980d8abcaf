from setuptools import setup, find_packages

setup(
    name="dbmessenger",
    version="0.1.0",
    description="A durable database-backed message transport with leasing, deduplication and dead-lettering",
    author="Naufal Reky Ardhana",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    install_requires=[
        "python-dotenv>=0.15.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "aiosqlite>=0.17.0",
        "redis>=5.0.1",
        "psutil>=5.8.0",
    ],
    extras_require={
        "mysql": ["aiomysql>=0.2.0"],
    },
    python_requires=">=3.8",
    entry_points={
        'console_scripts': [
            'dbmessenger=main:main',
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
