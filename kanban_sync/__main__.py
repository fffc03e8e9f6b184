from kanban_sync.agent.service import main

if __name__ == "__main__":
    main()
