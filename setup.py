from setuptools import setup, find_packages
import re

VERSIONFILE="asyup/_version.py"
verstrline = open(VERSIONFILE, "rt").read()
VSRE = r"^__version__ = ['\"]([^'\"]*)['\"]"
mo = re.search(VSRE, verstrline, re.M)
if mo:
    verstr = mo.group(1)
else:
    raise RuntimeError("Unable to find version string in %s." % (VERSIONFILE,))


setup(
	# Application name:
	name="asyup",

	# Version number (initial):
	version=verstr,

	# Packages
	packages=find_packages(),

	# Include additional files into the package
	include_package_data=True,

	zip_safe = True,
	#
	# license="LICENSE.txt",
	description="Asynchronous HTTP / FastCGI file server with directory listings and uploads",
	long_description="",

	python_requires='>=3.9',
	classifiers=[
		"Programming Language :: Python :: 3.9",
		"License :: OSI Approved :: MIT License",
		"Operating System :: OS Independent",
	],
	install_requires=[
		'h11>=0.14.0',
	],
	extras_require={
		'test': [
			'pytest',
			'pytest-asyncio',
		],
	},
	entry_points={
		'console_scripts': [
			'asyup = asyup.examples.upserver:main',
		],
	}
)
