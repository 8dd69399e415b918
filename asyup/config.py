import os
import enum
import ipaddress
from typing import Dict, Tuple

DEFAULT_ADDRESS = '0.0.0.0:4000'

ENV_MODE = 'GOUP_MODE'
ENV_UPLOAD = 'GOUP_UPLOAD'
ENV_DIR = 'GOUP_DIR'


class TransportMode(enum.Enum):
	HTTP = 'http'
	FCGI = 'fcgi'

	@staticmethod
	def from_string(mode:str):
		try:
			return TransportMode(mode)
		except ValueError:
			raise ValueError("Unknown mode '%s'!" % mode) from None


def parse_address(address:str) -> Tuple[str, int]:
	"""
	Splits a HOST:PORT listen address. IPv6 hosts must be bracketed ([::1]:4000).
	An empty host means all interfaces.
	"""
	host, sep, port = address.rpartition(':')
	if sep == '':
		raise ValueError("Missing port in address '%s'" % address)
	if host.startswith('[') and host.endswith(']'):
		host = host[1:-1]
		ipaddress.IPv6Address(host)
	try:
		port = int(port)
	except ValueError:
		raise ValueError("Invalid port in address '%s'" % address) from None
	if port < 0 or port > 65535:
		raise ValueError("Port out of range in address '%s'" % address)
	if host == '':
		host = '0.0.0.0'
	return host, port


class ServerConfig:
	"""
	Settings of one server instance. Built once at startup and handed to the
	request handlers; nothing reads configuration from globals.
	"""
	def __init__(self, root:str = '.', upload:bool = True, mode:TransportMode = TransportMode.HTTP, address:str = DEFAULT_ADDRESS, verbose:bool = True, debug:bool = False, inherit_socket:bool = True):
		self.root = root
		self.upload = upload
		self.mode = mode
		self.address = address
		self.verbose = verbose
		self.debug = debug
		# fcgi mode only: serve on the listening socket passed as fd 0
		self.inherit_socket = inherit_socket

	@staticmethod
	def from_env(environ:Dict[str, str] = None):
		"""
		Defaults overridden by the GOUP_* environment variables.
		The mode is kept as given and only checked by validate(), so a bad
		GOUP_MODE can still be overridden on the command line.
		"""
		if environ is None:
			environ = os.environ
		config = ServerConfig()
		if environ.get(ENV_UPLOAD) == 'false':
			config.upload = False
		if environ.get(ENV_DIR):
			config.root = environ[ENV_DIR]
		if environ.get(ENV_MODE):
			config.mode = environ[ENV_MODE]
		return config

	def get_mode_name(self):
		if isinstance(self.mode, TransportMode):
			return self.mode.value
		return self.mode

	def get_listen_address(self):
		return parse_address(self.address)

	def validate(self):
		if not isinstance(self.mode, TransportMode):
			self.mode = TransportMode.from_string(self.mode)
		self.get_listen_address()
		if not os.path.isdir(self.root):
			raise ValueError("Directory '%s' does not exist or is not a directory" % self.root)
		return True

	def settings(self):
		return [
			('addr', self.address),
			('debug', self.debug),
			('dir', self.root),
			('mode', self.get_mode_name()),
			('noupload', not self.upload),
			('v', self.verbose),
		]

	def __str__(self):
		t = '==== ServerConfig ====\r\n'
		for k, v in self.settings():
			t += '%s: %s\r\n' % (k, v)
		return t
