"""Setup frameboost package."""
import os

from setuptools import find_packages, setup

CURRENT_DIR = os.path.abspath(os.path.dirname(__file__))


if __name__ == '__main__':
    with open(os.path.join(CURRENT_DIR, 'frameboost', 'VERSION'),
              encoding='ascii') as fd:
        version = fd.read().strip()

    setup(name='frameboost',
          version=version,
          description="Gradient boosted trees on columnar frames with a "
          "portable scorer",
          install_requires=[
              'numpy',
              'scipy',
              'xgboost>=2.0',
              'scikit-learn',
          ],
          extras_require={
              'pandas': ['pandas'],
              'testing': ['pytest', 'pandas'],
          },
          zip_safe=False,
          packages=find_packages(include=['frameboost', 'frameboost.*']),
          package_data={'frameboost': ['VERSION']},
          include_package_data=True,
          license='Apache-2.0',
          classifiers=['License :: OSI Approved :: Apache Software License',
                       'Operating System :: OS Independent',
                       'Programming Language :: Python',
                       'Programming Language :: Python :: 3',
                       'Programming Language :: Python :: 3.10',
                       'Programming Language :: Python :: 3.11',
                       'Programming Language :: Python :: 3.12'],
          python_requires=">=3.10")
