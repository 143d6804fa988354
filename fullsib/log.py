import logging


# Configure logging
def setup_logger():
    """Setup logger with both file and stream handlers"""
    logger = logging.getLogger("fullsib")
    logger.setLevel(logging.INFO)
    # turn off propagation to parent logger
    logger.propagate = False

    if logger.handlers:
        return logger

    # create formatter
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                datefmt='%Y-%m-%d %H:%M:%S')

    # add file handler
    fh = logging.FileHandler('fullsib.log')
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    # add console handler
    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger

# create logger instance
logger = setup_logger()
