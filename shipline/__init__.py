import logging

from shipline.config import config

logging.basicConfig(
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    level=logging.INFO,
)
if config.debug:
    logging.getLogger('shipline.runner').setLevel(logging.DEBUG)
    logging.getLogger('shipline.utils').setLevel(logging.DEBUG)
