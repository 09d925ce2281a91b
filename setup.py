"""Setup script for Chat Worker.

Distribution name: chat-worker
Python packages: chat_worker (worker lifecycle, session sync, adapters)
"""

from setuptools import setup, find_packages


def _read_readme() -> str:
    try:
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    except Exception:
        return 'Chat Worker - connects a local OpenCode agent runtime to a Convex chat backend.'


setup(
    name='chat-worker',
    version='0.1.0',
    description='Worker process that serves Convex chat sessions with a local OpenCode agent runtime',
    long_description=_read_readme(),
    long_description_content_type='text/markdown',
    author='Chat Worker Contributors',
    author_email='',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    python_requires='>=3.11',
    install_requires=[
        'aiohttp>=3.9.0',
        'pydantic>=2.0.0',
        'python-dotenv>=1.0.0',
        # Status API
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'httpx>=0.25.0',
    ],
    entry_points={
        'console_scripts': [
            'chat-worker=chat_worker.cli:main',
        ]
    },
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
            'pytest-cov>=4.1.0',
        ],
        'dev': [
            'black>=23.0.0',
            'ruff>=0.1.0',
            'mypy>=1.6.0',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
)
