import logging
import os

def setup_logger(name='chathub', log_dir=None, console_level=None):
    """Set up a logger with console and file output.
    
    Creates a logger that writes:
    - INFO and above to console (or CHATHUB_LOG_LEVEL)
    - DEBUG and above to file (logs/server.log)
    
    Calling it again for a logger that already has handlers returns the
    existing logger unchanged.
    
    Args:
        name (str, optional): Logger name. Defaults to 'chathub'
        log_dir (str, optional): Directory for server.log. Defaults to
            CHATHUB_LOG_DIR or the package's logs/ directory
        console_level (str, optional): Console level name. Defaults to
            CHATHUB_LOG_LEVEL or INFO
        
    Returns:
        logging.Logger: Configured logger instance
        
    Side Effects:
        - Creates logs directory if it doesn't exist
        - Creates/appends to server.log file
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    # Create formatters and handlers
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    # Console handler
    level_name = (console_level or os.environ.get('CHATHUB_LOG_LEVEL') or 'INFO').upper()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, level_name, logging.INFO))

    # File handler - ensure log directory exists
    if log_dir is None:
        log_dir = os.environ.get('CHATHUB_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.dirname(__file__)), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, 'server.log'), encoding='utf-8')
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    # Add handlers to logger
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.propagate = False

    return logger


def configure_loggers(log_dir=None, console_level=None, prefix='chathub'):
    """Rebuild the handlers of every logger already set up under prefix.

    Module loggers are created at import time from the environment; this
    applies explicit settings (e.g. from ServerConfig) to all of them.

    Returns:
        list: Names of the loggers that were reconfigured
    """
    names = sorted(
        name for name, obj in logging.Logger.manager.loggerDict.items()
        if isinstance(obj, logging.Logger) and obj.handlers
        and (name == prefix or name.startswith(prefix + '.'))
    )
    for name in names:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        setup_logger(name, log_dir=log_dir, console_level=console_level)
    return names
