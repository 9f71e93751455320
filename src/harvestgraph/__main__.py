from harvestgraph.main import main

main()
