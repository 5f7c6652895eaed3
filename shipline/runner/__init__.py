from shipline.runner.runner import Runner, load_archived_run, load_shipfile

__all__ = ['Runner', 'load_archived_run', 'load_shipfile']
