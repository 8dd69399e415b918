# https://fastcgi-archives.github.io/FastCGI_Specification.html

import io
import enum
import asyncio

FCGI_VERSION_1 = 1
FCGI_HEADER_LEN = 8
FCGI_MAX_CONTENT_LEN = 65535
FCGI_NULL_REQUEST_ID = 0
FCGI_KEEP_CONN = 1

class FCGIProtocolError(Exception):
	pass

class FCGIRecordType(enum.Enum):
	BEGIN_REQUEST = 1
	ABORT_REQUEST = 2
	END_REQUEST = 3
	PARAMS = 4
	STDIN = 5
	STDOUT = 6
	STDERR = 7
	DATA = 8
	GET_VALUES = 9
	GET_VALUES_RESULT = 10
	UNKNOWN_TYPE = 11

class FCGIRole(enum.Enum):
	RESPONDER = 1
	AUTHORIZER = 2
	FILTER = 3

class FCGIProtocolStatus(enum.Enum):
	REQUEST_COMPLETE = 0
	CANT_MPX_CONN = 1 #rejecting a new request, connection does not multiplex
	OVERLOADED = 2 #application ran out of some resource
	UNKNOWN_ROLE = 3 #role is not supported


def encode_length(n:int):
	if n < 128:
		return n.to_bytes(1, byteorder = 'big', signed = False)
	return (n | 0x80000000).to_bytes(4, byteorder = 'big', signed = False)

def decode_length(buff):
	t = buff.read(1)
	if len(t) != 1:
		raise FCGIProtocolError('Truncated name-value pair')
	if t[0] < 128:
		return t[0]
	rest = buff.read(3)
	if len(rest) != 3:
		raise FCGIProtocolError('Truncated name-value pair')
	return int.from_bytes(t + rest, byteorder = 'big', signed = False) & 0x7fffffff

def encode_params(params):
	t = b''
	for name, value in params.items():
		if isinstance(name, str):
			name = name.encode('latin-1')
		if isinstance(value, str):
			value = value.encode('latin-1')
		t += encode_length(len(name)) + encode_length(len(value)) + name + value
	return t

def decode_params(data:bytes):
	"""Decodes a name-value pair stream, names and values as latin-1 str"""
	buff = io.BytesIO(data)
	params = {}
	while buff.tell() < len(data):
		name_len = decode_length(buff)
		value_len = decode_length(buff)
		name = buff.read(name_len)
		value = buff.read(value_len)
		if len(name) != name_len or len(value) != value_len:
			raise FCGIProtocolError('Truncated name-value pair')
		params[name.decode('latin-1')] = value.decode('latin-1')
	return params


class FCGIRecord:
	def __init__(self, rtype:FCGIRecordType = None, request_id:int = FCGI_NULL_REQUEST_ID, content:bytes = b''):
		self.VERSION = FCGI_VERSION_1
		self.TYPE = rtype
		self.REQUEST_ID = request_id
		self.CONTENT = content

	@staticmethod
	def from_bytes(data):
		return FCGIRecord.from_buffer(io.BytesIO(data))

	@staticmethod
	def from_buffer(buff):
		header = buff.read(FCGI_HEADER_LEN)
		if len(header) != FCGI_HEADER_LEN:
			raise FCGIProtocolError('Truncated record header')
		content_length, padding_length = FCGIRecord.parse_header(header)
		o = FCGIRecord.from_header(header)
		o.CONTENT = buff.read(content_length)
		if len(o.CONTENT) != content_length:
			raise FCGIProtocolError('Truncated record content')
		buff.read(padding_length)
		return o

	@staticmethod
	async def from_streamreader(reader, timeout = None):
		"""Reads one record, None on a clean EOF between records"""
		try:
			header = await asyncio.wait_for(reader.readexactly(FCGI_HEADER_LEN), timeout = timeout)
		except asyncio.IncompleteReadError as e:
			if e.partial == b'':
				return None
			raise FCGIProtocolError('Truncated record header') from e
		content_length, padding_length = FCGIRecord.parse_header(header)
		o = FCGIRecord.from_header(header)
		try:
			data = await asyncio.wait_for(reader.readexactly(content_length + padding_length), timeout = timeout)
		except asyncio.IncompleteReadError as e:
			raise FCGIProtocolError('Truncated record content') from e
		o.CONTENT = data[:content_length]
		return o

	@staticmethod
	def parse_header(header:bytes):
		if header[0] != FCGI_VERSION_1:
			raise FCGIProtocolError('Unsupported FastCGI version %s' % header[0])
		content_length = int.from_bytes(header[4:6], byteorder = 'big', signed = False)
		return content_length, header[6]

	@staticmethod
	def from_header(header:bytes):
		o = FCGIRecord()
		o.VERSION = header[0]
		try:
			o.TYPE = FCGIRecordType(header[1])
		except ValueError:
			# kept as int, answered with UNKNOWN_TYPE
			o.TYPE = header[1]
		o.REQUEST_ID = int.from_bytes(header[2:4], byteorder = 'big', signed = False)
		return o

	def get_type_value(self):
		if isinstance(self.TYPE, FCGIRecordType):
			return self.TYPE.value
		return self.TYPE

	def to_bytes(self):
		if len(self.CONTENT) > FCGI_MAX_CONTENT_LEN:
			raise FCGIProtocolError('Record content too long')
		padding_length = -len(self.CONTENT) % 8
		t = self.VERSION.to_bytes(1, byteorder = 'big', signed = False)
		t += self.get_type_value().to_bytes(1, byteorder = 'big', signed = False)
		t += self.REQUEST_ID.to_bytes(2, byteorder = 'big', signed = False)
		t += len(self.CONTENT).to_bytes(2, byteorder = 'big', signed = False)
		t += padding_length.to_bytes(1, byteorder = 'big', signed = False)
		t += b'\x00' #reserved
		t += self.CONTENT
		t += b'\x00' * padding_length
		return t

	def __repr__(self):
		return 'FCGIRecord(%s, id=%s, %s bytes)' % (self.TYPE, self.REQUEST_ID, len(self.CONTENT))


def stream_records(rtype:FCGIRecordType, request_id:int, data:bytes):
	"""Splits data into as many records as needed, no terminating empty record"""
	t = b''
	for i in range(0, len(data), FCGI_MAX_CONTENT_LEN):
		t += FCGIRecord(rtype, request_id, data[i:i+FCGI_MAX_CONTENT_LEN]).to_bytes()
	return t


class FCGIBeginRequestBody:
	def __init__(self, role:FCGIRole = FCGIRole.RESPONDER, flags:int = 0):
		self.ROLE = role
		self.FLAGS = flags

	@property
	def keep_conn(self):
		return bool(self.FLAGS & FCGI_KEEP_CONN)

	@staticmethod
	def from_bytes(data):
		if len(data) != 8:
			raise FCGIProtocolError('Invalid BEGIN_REQUEST body length')
		o = FCGIBeginRequestBody()
		role = int.from_bytes(data[0:2], byteorder = 'big', signed = False)
		try:
			o.ROLE = FCGIRole(role)
		except ValueError:
			o.ROLE = role
		o.FLAGS = data[2]
		return o

	def to_bytes(self):
		role = self.ROLE.value if isinstance(self.ROLE, FCGIRole) else self.ROLE
		t = role.to_bytes(2, byteorder = 'big', signed = False)
		t += self.FLAGS.to_bytes(1, byteorder = 'big', signed = False)
		t += b'\x00' * 5
		return t

class FCGIEndRequestBody:
	def __init__(self, app_status:int = 0, protocol_status:FCGIProtocolStatus = FCGIProtocolStatus.REQUEST_COMPLETE):
		self.APP_STATUS = app_status
		self.PROTOCOL_STATUS = protocol_status

	@staticmethod
	def from_bytes(data):
		if len(data) != 8:
			raise FCGIProtocolError('Invalid END_REQUEST body length')
		o = FCGIEndRequestBody()
		o.APP_STATUS = int.from_bytes(data[0:4], byteorder = 'big', signed = False)
		o.PROTOCOL_STATUS = FCGIProtocolStatus(data[4])
		return o

	def to_bytes(self):
		t = self.APP_STATUS.to_bytes(4, byteorder = 'big', signed = False)
		t += self.PROTOCOL_STATUS.value.to_bytes(1, byteorder = 'big', signed = False)
		t += b'\x00' * 3
		return t

class FCGIUnknownTypeBody:
	def __init__(self, rtype:int = 0):
		self.TYPE = rtype

	def to_bytes(self):
		return self.TYPE.to_bytes(1, byteorder = 'big', signed = False) + b'\x00' * 7
