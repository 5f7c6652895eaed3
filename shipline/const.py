CHECKOUT = 'checkout'
BUILD = 'build'
SCAN = 'scan'
PUSH = 'push'
DEPLOY = 'deploy'

STAGE_ORDER = (CHECKOUT, BUILD, SCAN, PUSH, DEPLOY)

DEFAULT_GATES = {
    PUSH: 'Push {image} to {registry}?',
    DEPLOY: 'Deploy {image} to {namespace}/{deployment}?',
}

DEFAULT_SCAN_SEVERITY = ('HIGH', 'CRITICAL')
WORKSPACE_DIRNAME = 'workspace'
RUN_ARCHIVE_FILENAME = 'run.json'
