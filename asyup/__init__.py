import sys
import logging

logger = logging.getLogger('asyup')
handler = logging.StreamHandler(sys.stdout)
formatter = logging.Formatter(
		'%(asctime)s %(name)-12s %(levelname)-8s %(message)s')
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(logging.INFO)
