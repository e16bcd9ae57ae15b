from rich.console import Console

console = Console(color_system='auto', log_path=False, log_time_format='%Y-%m-%d %H:%M:%S')
