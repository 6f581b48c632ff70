from setuptools import setup
from glob import glob
import os

package_name = 'saliency_mapping'

setup(
    name=package_name,
    version='0.1.0',
    packages=[
        package_name,
        package_name + '.core',
        package_name + '.utils',
    ],
    data_files=[
        (os.path.join('share', package_name, 'config'), glob('config/*.yaml')),
    ],
    scripts=['scripts/replay_cloud.py'],
    install_requires=[
        'setuptools',
        'numpy',
        'scipy',
        'pyyaml',
    ],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='root',
    maintainer_email='root@todo.todo',
    description='Saliency-aware probabilistic 3D occupancy mapping for visual exploration',
    license='TODO',
    tests_require=['pytest'],
)
