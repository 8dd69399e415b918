import sys
import asyncio
import logging
import argparse

from asyup import logger
from asyup._version import __banner__
from asyup.config import ServerConfig, TransportMode, DEFAULT_ADDRESS, ENV_UPLOAD, ENV_DIR, ENV_MODE
from asyup.handler import FileServerHandler
from asyup.server.httpserver import HTTPServer
from asyup.server.fcgiserver import FCGIServer

ENV_HELP = '''
Environment variables (get overridden by command line arguments):
  %s=false: disable uploads
  %s=<path>: see --dir
  %s=(http|fcgi): see --mode
''' % (ENV_UPLOAD, ENV_DIR, ENV_MODE)


def get_parser(defaults:ServerConfig):
	parser = argparse.ArgumentParser(
		description='HTTP file server with directory listings and uploads',
		formatter_class=argparse.RawDescriptionHelpFormatter,
		epilog=ENV_HELP,
	)
	parser.add_argument('--mode', default = defaults.get_mode_name(), help='run either standalone (http) or as FCGI application (fcgi)')
	parser.add_argument('--addr', default = None, help='listen on this address (default: %s). In fcgi mode the inherited socket on fd 0 is used unless this is given' % DEFAULT_ADDRESS)
	parser.add_argument('--dir', default = defaults.root, help='directory for storing and serving files')
	upload_group = parser.add_mutually_exclusive_group()
	upload_group.add_argument('--noupload', dest='noupload', action='store_true', help='disable uploads')
	upload_group.add_argument('--upload', dest='noupload', action='store_false', help='enable uploads')
	parser.set_defaults(noupload = not defaults.upload)
	parser.add_argument('-v', '--verbose', action=argparse.BooleanOptionalAction, default = defaults.verbose, help='verbose output')
	parser.add_argument('-d', '--debug', action='store_true', help='debug output, implies --verbose')
	return parser

def build_config(argv = None, environ = None) -> ServerConfig:
	"""Defaults < environment < command line"""
	config = ServerConfig.from_env(environ)
	args = get_parser(config).parse_args(argv)

	config.mode = TransportMode.from_string(args.mode)
	config.root = args.dir
	config.upload = not args.noupload
	config.verbose = args.verbose or args.debug
	config.debug = args.debug
	config.inherit_socket = args.addr is None
	if args.addr is not None:
		config.address = args.addr
	config.validate()
	return config

def setup_logging(config:ServerConfig):
	if config.verbose is False:
		# operational messages are discarded, fatal errors still show
		logger.setLevel(logging.CRITICAL)
	elif config.debug is True:
		logger.setLevel(logging.DEBUG)
	else:
		logger.setLevel(logging.INFO)

def get_server(config:ServerConfig):
	handler_factory = lambda: FileServerHandler(config)
	if config.mode == TransportMode.FCGI:
		if config.inherit_socket is True:
			return FCGIServer(handler_factory)
		host, port = config.get_listen_address()
		return FCGIServer(handler_factory, host, port)
	host, port = config.get_listen_address()
	return HTTPServer(handler_factory, host, port)

async def amain(config:ServerConfig):
	server = get_server(config)
	await server.start()
	await server.serve()

def main(argv = None):
	try:
		config = build_config(argv)
	except ValueError as e:
		logger.critical(str(e))
		sys.exit(1)

	for name, value in config.settings():
		logger.info('SETTINGS: %s = %s' % (name, value))

	setup_logging(config)
	if config.verbose is True:
		print(__banner__)

	try:
		asyncio.run(amain(config))
	except KeyboardInterrupt:
		pass
	except OSError as e:
		logger.critical('Failed to start server: %s' % e)
		sys.exit(1)

if __name__ == '__main__':
	main()
