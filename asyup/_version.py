
__version__ = "0.1.0"
__banner__ = \
"""
# asyup %s 
# HTTP / FastCGI file listing and upload server
""" % __version__
