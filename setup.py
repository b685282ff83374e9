from setuptools import setup
from os import path

BASE_DIR = path.abspath(path.dirname(__file__))
with open(path.join(BASE_DIR, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()


# based on https://packaging.python.org/guides/single-sourcing-package-version/
def get_version():
    version_file = path.join(BASE_DIR, 'certkeeper', 'version.py')
    with open(version_file, encoding='utf-8') as f:
        for line in f:
            if line.startswith('__version__'):
                delim = '"' if '"' in line else "'"
                return line.split(delim)[1]
        raise RuntimeError("Unable to find version string.")


setup(
    name='certkeeper',
    version=get_version(),
    packages=['certkeeper', 'certkeeper.registry', 'certkeeper.lifecycle'],
    license='MIT',
    description='Certificate renewal with lifecycle hooks',
    long_description=long_description,
    long_description_content_type='text/markdown',
    classifiers=[
        'Development Status :: 3 - Alpha',

        'Intended Audience :: System Administrators',

        'License :: OSI Approved :: MIT License',

        'Operating System :: POSIX',

        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',

        'Topic :: Security :: Cryptography',
        'Topic :: System :: Systems Administration',
    ],
    entry_points={
        "console_scripts": [
            "certkeeper = certkeeper.__main__:launch"
        ]
    },
    python_requires='>=3.8',
    install_requires=[
        'asn1crypto>=1.4.0',
        'click>=7.1.2',
        'cryptography>=3.4.7',
        'pyyaml>=5.4.1',
        'python-dateutil>=2.8.1',
        'tzlocal>=2.1'
    ],
    extras_require={
        'testing': [
            'pytest>=6.1.1', 'pytz>=2020.1', 'freezegun>=1.1.0',
        ]
    },
    keywords="pki certificates renewal hooks"
)
