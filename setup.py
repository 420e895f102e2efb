from glob import glob
from setuptools import find_packages, setup

package_name = 'es60_adjust'

setup(
    name=package_name,
    version='0.1.0',
    packages=find_packages(exclude=['test']),
    data_files=[
        ('share/' + package_name + '/config', glob('config/*')),
        ('share/' + package_name + '/scripts', glob('scripts/*')),
    ],
    install_requires=[
        'setuptools',
        'numpy',
        'pyproj',
        'PyYAML',
    ],
    zip_safe=True,
    maintainer='Shekhar Devm Upadhyay',
    maintainer_email='sdup@kth.se',
    description='Triangle wave correction and phase search for Simrad ES60 .raw files',
    license='Apache-2.0',
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'es60_adjust = es60_adjust.cli:main',
        ],
    },
)
