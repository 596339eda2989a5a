import logging
import sys
from datetime import datetime
from pathlib import Path

from topscores.config import Config
from topscores.constants import LogConstants

def setup_logger(name: str) -> logging.Logger:
    """Setup a logger with consistent formatting"""
    
    logger = logging.getLogger(name)
    
    if logger.handlers:
        return logger
    
    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(log_level)
    
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    
    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    
    # File handler
    log_dir = Path('logs')
    log_dir.mkdir(exist_ok=True)
    
    file_handler = logging.FileHandler(
        log_dir / f'leaderboard_{datetime.now().strftime("%Y%m%d")}.log',
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    
    return logger


class RollingLogBuffer:
    """In-memory text log bounded by character count.
    
    Oldest whole lines are dropped first once the budget is exceeded.
    """
    
    def __init__(self, max_size: int = LogConstants.MAX_LOG_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._text = ""
    
    def append(self, message: str):
        self._text += message + "\n"
        while len(self._text) > self.max_size:
            index = self._text.find("\n")
            if index == -1 or index + 1 >= len(self._text):
                # A single line longer than the budget keeps its tail
                self._text = self._text[-self.max_size:]
                break
            self._text = self._text[index + 1:]
    
    def clear(self):
        self._text = ""
    
    @property
    def text(self) -> str:
        return self._text
    
    def __len__(self) -> int:
        return len(self._text)
