from accessmatrix.aggregator import STAGES
from accessmatrix.progress import ProjectStageProgress


def test_stage_tracking_without_bar():
    progress = ProjectStageProgress(projects=["a", "b"], stages=STAGES, enabled=False)
    progress.callback("a")("inventory")
    progress.advance("b", "principals")
    # Going backwards is ignored for the bar but the label follows.
    progress.advance("a", "principals")

    assert progress.stage_of("a") == "principals"
    assert progress.stage_of("b") == "principals"
    progress.finish("a")
    assert progress.stage_of("a") == "done"
    assert progress.stage_of("c") is None
    progress.close()
    progress.close()


def test_bar_reaches_total():
    progress = ProjectStageProgress(projects=["a"], stages=STAGES, enabled=True)
    for stage in STAGES:
        progress.advance("a", stage)
    progress.finish("a")
    assert abs(progress._bar.n - 1) < 1e-9
    progress.close()
